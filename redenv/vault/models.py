"""
Vault records: typed shapes of everything redenv keeps in the store.

Records are decoded once, at the store boundary, and serialized back with
the field names the rest of the redenv ecosystem reads (``encryptedPEK``,
``createdAt``, ``value``, ``user``...).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

import orjson
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_serializer,
    field_validator,
)

from ..conf import DEFAULT_HISTORY_LIMIT, EPHEMERAL_PREFIX
from ..exceptions import InvalidFormat, ProjectNotFound

logger = logging.getLogger("redenv.vault")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    """Millisecond precision ISO-8601 with a ``Z`` suffix."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _loads(raw: Union[str, bytes, None]) -> Any:
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    return orjson.loads(raw)


class VaultRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_serializer("created_at", check_fields=False)
    def _serialize_created(self, value: datetime) -> str:
        return isoformat(value)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class SecretVersion(VaultRecord):
    """One entry of a secret's history, newest entries first."""

    version: int = Field(ge=1)
    ciphertext: str = Field(alias="value")
    author: str = Field(alias="user")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


class ServiceToken(VaultRecord):
    """A credential holding its own wrapped copy of the project key."""

    encrypted_pek: str = Field(alias="encryptedPEK")
    salt: str = Field(pattern=r"^[0-9a-f]+$")
    name: str
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


class EphemeralToken(ServiceToken):
    expires_at: datetime = Field(alias="expiresAt")

    @field_serializer("expires_at")
    def _serialize_expires(self, value: datetime) -> str:
        return isoformat(value)


HistoryAdapter = TypeAdapter(list[SecretVersion])
TokenMap = dict[str, ServiceToken]
TokenMapAdapter = TypeAdapter(TokenMap)


def decode_history(raw: Union[str, bytes, list, None], key: str = "") -> list[SecretVersion]:
    """Decode a stored history field; an absent field is an empty history.

    Raises:
        InvalidFormat: If the field is not a valid version list.
    """
    try:
        data = _loads(raw)
        if data is None:
            return []
        return HistoryAdapter.validate_python(data)
    except (orjson.JSONDecodeError, ValidationError) as err:
        raise InvalidFormat(
            f"Corrupted history for secret '{key}'",
            context={"key": key}
        ) from err


def encode_history(history: list[SecretVersion]) -> str:
    return orjson.dumps([v.to_json() for v in history]).decode("utf-8")


def decode_tokens(raw: Union[str, bytes, dict, None]) -> TokenMap:
    try:
        data = _loads(raw)
        if not data:
            return {}
        return TokenMapAdapter.validate_python(data)
    except (orjson.JSONDecodeError, ValidationError) as err:
        raise InvalidFormat("Corrupted service token map") from err


def encode_tokens(tokens: TokenMap) -> str:
    return orjson.dumps(
        {token_id: token.to_json() for token_id, token in tokens.items()}
    ).decode("utf-8")


def decode_ephemeral(raw: Union[str, bytes]) -> EphemeralToken:
    try:
        return EphemeralToken.model_validate(_loads(raw))
    except (orjson.JSONDecodeError, ValidationError) as err:
        raise InvalidFormat("Corrupted ephemeral token record") from err


class ProjectMetadata(BaseModel):
    """Decoded content of the ``meta@{project}`` hash."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    encrypted_pek: str = Field(alias="encryptedPEK")
    salt: str
    history_limit: int = Field(default=DEFAULT_HISTORY_LIMIT, ge=0, alias="historyLimit")
    service_tokens: TokenMap = Field(default_factory=dict, alias="serviceTokens")
    ephemeral_tokens: dict[str, EphemeralToken] = Field(default_factory=dict)
    kdf: Optional[str] = None
    algorithm: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    @field_validator("service_tokens", mode="before")
    @classmethod
    def parse_tokens(cls, v: Any) -> Any:
        """Token maps are stored as a JSON string field."""
        return decode_tokens(v)

    @classmethod
    def from_hash(cls, name: str, data: Optional[dict[str, Any]]) -> "ProjectMetadata":
        """Build metadata from a raw ``hgetall`` result.

        Raises:
            ProjectNotFound: If the hash is empty or lacks the wrapped key.
            InvalidFormat: If a field cannot be decoded.
        """
        if not data or not data.get("encryptedPEK") or not data.get("salt"):
            raise ProjectNotFound(
                f'Could not find encryption metadata for project "{name}". '
                "The project may not be registered correctly.",
                context={"project": name}
            )
        fields = dict(data)
        ephemeral = {}
        for field_name in list(fields):
            if field_name.startswith(EPHEMERAL_PREFIX):
                token_id = field_name[len(EPHEMERAL_PREFIX):]
                raw = fields.pop(field_name)
                try:
                    ephemeral[token_id] = decode_ephemeral(raw)
                except InvalidFormat:
                    # an unreadable token must not lock out the other credentials
                    logger.warning(
                        "Skipping corrupted ephemeral token %s of project %s",
                        token_id, name,
                    )
        try:
            return cls(name=name, ephemeral_tokens=ephemeral, **fields)
        except ValidationError as err:
            raise InvalidFormat(
                f'Corrupted metadata for project "{name}"',
                context={"project": name}
            ) from err

    def find_token(self, token_id: str) -> Optional[ServiceToken]:
        return self.service_tokens.get(token_id) or self.ephemeral_tokens.get(token_id)
