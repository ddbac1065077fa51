"""Redenv Meta information.
   Redenv keeps application secrets encrypted inside an untrusted
   Redis-compatible store, only the holders of a project key can read them.
"""
__title__ = 'redenv'
__description__ = (
   'Zero-knowledge secret management on top of an untrusted '
   'Redis-compatible key-value store.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2025 Redenv Authors'
__author__ = 'Redenv Authors'
__license__ = 'Apache-2.0'
