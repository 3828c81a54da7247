"""Upstream call outcomes and the broker's reply schema.

``UpstreamResult`` is a tagged union of four dataclasses; the chat handler
dispatches on the concrete type:

  UpstreamSuccess      — 2xx; body forwarded verbatim
  UpstreamClientError  — 4xx; status and body passed through unchanged
  UpstreamServerError  — every other non-2xx status; caller sees a generic 503
  NetworkFailure       — connect error / timeout / protocol error; generic 503
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class SynapSysMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Optional[str] = None
    reason: Optional[str] = None


class SynapSysReply(BaseModel):
    """Shape of the broker's chat reply. Parsed leniently, for logging only."""

    model_config = ConfigDict(extra="allow")

    sender: Optional[str] = None
    content: Optional[str] = None
    metadata: SynapSysMetadata = Field(default_factory=SynapSysMetadata)

    @classmethod
    def parse_lenient(cls, data: Any) -> "SynapSysReply":
        """Best-effort parse; never raises, unknown shapes give defaults."""
        if not isinstance(data, dict):
            return cls()
        try:
            return cls.model_validate(data)
        except ValidationError:
            return cls()


@dataclass(frozen=True)
class UpstreamSuccess:
    status_code: int
    body: bytes
    content_type: Optional[str]
    sender: str = "unknown"
    content: str = ""
    status: str = "unknown"
    reason: Optional[str] = None


@dataclass(frozen=True)
class UpstreamClientError:
    status_code: int
    body: bytes
    content_type: Optional[str]


@dataclass(frozen=True)
class UpstreamServerError:
    status_code: int
    body: bytes


@dataclass(frozen=True)
class NetworkFailure:
    message: str
    error_type: str = ""


UpstreamResult = Union[UpstreamSuccess, UpstreamClientError, UpstreamServerError, NetworkFailure]
