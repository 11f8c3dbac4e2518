"""
Request and outcome models for the proxy.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ValidationError

MISSING_KEY = "missing_key"
INVALID_REQUEST = "invalid_request"
MISSING_KEY_MESSAGE = "Request must include non-empty 'key'"


class ProxyEnvelope(BaseModel):
    """Body of ``POST /proxy``."""

    model_config = ConfigDict(extra="ignore")

    key: str = Field(min_length=1)
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    @field_validator("url")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        try:
            parsed = httpx.URL(value)
        except httpx.InvalidURL as e:
            raise ValueError(f"invalid URL: {e}") from e
        if not parsed.scheme or not parsed.host:
            raise ValueError("must be an absolute URL")
        return value

    @property
    def timeout(self) -> Optional[float]:
        """Timeout in seconds, or None for the proxy default."""
        if self.timeout_ms is None:
            return None
        return self.timeout_ms / 1000


def parse_envelope(payload: Any) -> ProxyEnvelope:
    """Validate a decoded JSON body.

    The key is checked before anything else so that a missing key is
    reported the same way whatever the rest of the envelope contains.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object", code=INVALID_REQUEST)

    key = payload.get("key")
    if not isinstance(key, str) or not key.strip():
        raise ValidationError(MISSING_KEY_MESSAGE, code=MISSING_KEY)

    try:
        return ProxyEnvelope.model_validate({**payload, "key": key.strip()})
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(problems, code=INVALID_REQUEST, details={"errors": e.error_count()}) from e


@dataclass(frozen=True)
class Forwarded:
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: bytes = b""


@dataclass(frozen=True)
class RateLimited:
    retry_after: float = 0.0


@dataclass(frozen=True)
class MissingKey:
    pass


@dataclass(frozen=True)
class InvalidRequest:
    detail: str


@dataclass(frozen=True)
class StoreFailure:
    detail: str


@dataclass(frozen=True)
class DownstreamError:
    detail: str


@dataclass(frozen=True)
class ClientClosed:
    pass


ProxyOutcome = Union[Forwarded, RateLimited, MissingKey, InvalidRequest, StoreFailure, DownstreamError, ClientClosed]
