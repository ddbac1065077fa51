"""
Client Configuration: validated options for the runtime client.

Values can be passed explicitly or read from environment variables:
    REDENV_PROJECT, REDENV_ENVIRONMENT, REDENV_TOKEN_ID, REDENV_TOKEN,
    REDENV_REDIS_URL, REDENV_CACHE_TTL, REDENV_CACHE_SWR

Security Note:
    Never log the token secret. ``token`` is a SecretStr and is masked
    in reprs.
"""
import os
from typing import Any, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from .. import conf
from ..exceptions import MissingConfig
from ..storage import validate_name

_REQUIRED = ("project", "token_id", "token")

_ENV_MAP = {
    "project": "REDENV_PROJECT",
    "environment": "REDENV_ENVIRONMENT",
    "token_id": "REDENV_TOKEN_ID",
    "token": "REDENV_TOKEN",
    "redis_url": "REDENV_REDIS_URL",
    "cache_ttl": "REDENV_CACHE_TTL",
    "cache_swr": "REDENV_CACHE_SWR",
}


class ClientConfig(BaseModel):
    """Validated runtime client configuration."""

    project: str
    token_id: str
    token: SecretStr
    environment: str = Field(default=conf.DEFAULT_ENVIRONMENT)
    redis_url: Optional[str] = None
    cache_ttl: int = Field(default=conf.CACHE_TTL, ge=0)
    cache_swr: int = Field(default=conf.CACHE_SWR, ge=0)
    populate_env: bool = True

    @model_validator(mode="before")
    @classmethod
    def check_required(cls, data: Any) -> Any:
        """Report every missing option at once."""
        if isinstance(data, dict):
            missing = [name for name in _REQUIRED if not data.get(name)]
            if missing:
                raise MissingConfig(
                    "[REDENV] Missing required configuration options: "
                    + ", ".join(missing),
                    context={"missing": missing}
                )
        return data

    @field_validator("project")
    @classmethod
    def validate_project(cls, v: str) -> str:
        validate_name(v, "project")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        validate_name(v, "environment")
        return v

    @property
    def cache_key(self) -> str:
        return f"redenv:{self.project}:{self.environment}"

    @classmethod
    def from_env(cls, **overrides: Any) -> "ClientConfig":
        """Create a ClientConfig from environment variables.

        Explicit ``overrides`` take precedence over the environment.
        """
        values: dict[str, Any] = {}
        for name, env_var in _ENV_MAP.items():
            raw = os.environ.get(env_var)
            if raw:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
