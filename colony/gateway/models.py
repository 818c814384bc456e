"""Pydantic request/response models for the tool/model gateway contract."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from colony.errors import GatewayError, GatewayTimeout, GatewayUnavailable


class RequestKind(str, Enum):
    """What the gateway is asked to invoke."""

    TOOL = "tool"
    MODEL = "model"


class ResponseStatus(str, Enum):
    """Outcome of a single gateway call."""

    OK = "ok"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


class GatewayRequest(BaseModel):
    """A single tool or model invocation."""

    kind: RequestKind
    name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)
    timeout: float = Field(30.0, gt=0)

    def describe(self) -> str:
        return f"{self.kind.value}:{self.name}"


class GatewayResponse(BaseModel):
    """Result of a gateway call. Never raised; callers inspect ``status``."""

    status: ResponseStatus
    payload: Any = None
    error_detail: str | None = None
    latency: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ResponseStatus.OK

    @property
    def retryable(self) -> bool:
        return self.status in (ResponseStatus.TIMEOUT, ResponseStatus.UNAVAILABLE)

    def raise_for_status(self, request_name: str = "") -> None:
        """Raise the matching gateway exception unless the call succeeded."""
        if self.status == ResponseStatus.OK:
            return
        detail = self.error_detail or self.status.value
        if self.status == ResponseStatus.TIMEOUT:
            raise GatewayTimeout(detail, request_name)
        if self.status == ResponseStatus.UNAVAILABLE:
            raise GatewayUnavailable(detail, request_name)
        raise GatewayError(detail, request_name)

    @classmethod
    def success(cls, payload: Any, latency: float = 0.0) -> GatewayResponse:
        return cls(status=ResponseStatus.OK, payload=payload, latency=latency)

    @classmethod
    def timed_out(cls, detail: str = "timed out", latency: float = 0.0) -> GatewayResponse:
        return cls(status=ResponseStatus.TIMEOUT, error_detail=detail, latency=latency)

    @classmethod
    def unavailable(cls, detail: str = "unavailable", latency: float = 0.0) -> GatewayResponse:
        return cls(status=ResponseStatus.UNAVAILABLE, error_detail=detail, latency=latency)

    @classmethod
    def failed(cls, detail: str, latency: float = 0.0) -> GatewayResponse:
        return cls(status=ResponseStatus.ERROR, error_detail=detail, latency=latency)
