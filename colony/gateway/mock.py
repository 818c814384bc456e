"""Deterministic gateway for tests and dry runs."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from typing import Any

from colony.gateway.models import GatewayRequest, GatewayResponse, ResponseStatus
from colony.logging import get_logger

logger = get_logger("gateway.mock")

Outcome = GatewayResponse | str | Callable[[GatewayRequest], GatewayResponse]


class MockGateway:
    """
    Gateway returning scripted responses without touching a live backend.

    Responses are matched by key: a key matches when it equals the request
    name or appears as a substring of the request's ``prompt`` or ``input``
    argument. Scripted outcomes are consumed in order; once a key's script
    runs dry the default payload is returned. An outcome may be a
    GatewayResponse, a status string (``"timeout"``, ``"unavailable"``,
    ``"error"``) or a callable receiving the request.
    """

    def __init__(
        self,
        default_payload: Any = "Mock result.",
        response_map: dict[str, Any] | None = None,
    ):
        self.default_payload = default_payload
        self.response_map: dict[str, Any] = dict(response_map or {})
        self._scripts: dict[str, deque[Outcome]] = {}
        self._lock = threading.Lock()
        self.calls: list[GatewayRequest] = []
        logger.debug("MockGateway initialized")

    def script(self, key: str, *outcomes: Outcome) -> MockGateway:
        """Queue outcomes for requests matching ``key``."""
        with self._lock:
            self._scripts.setdefault(key, deque()).extend(outcomes)
        return self

    def _matches(self, key: str, request: GatewayRequest) -> bool:
        if key == request.name:
            return True
        for arg in ("prompt", "input"):
            value = request.arguments.get(arg)
            if isinstance(value, str) and key in value:
                return True
        return False

    def invoke(self, request: GatewayRequest) -> GatewayResponse:
        outcome: Outcome | None = None
        with self._lock:
            self.calls.append(request)
            for key, queue in self._scripts.items():
                if queue and self._matches(key, request):
                    outcome = queue.popleft()
                    break
            if outcome is None:
                for key, payload in self.response_map.items():
                    if self._matches(key, request):
                        outcome = GatewayResponse.success(payload)
                        break
        if outcome is None:
            return GatewayResponse.success(self.default_payload)
        if callable(outcome) and not isinstance(outcome, GatewayResponse):
            return outcome(request)
        if isinstance(outcome, str):
            status = ResponseStatus(outcome)
            if status == ResponseStatus.OK:
                return GatewayResponse.success(self.default_payload)
            return GatewayResponse(status=status, error_detail=f"scripted {status.value}")
        return outcome

    def calls_matching(self, key: str) -> list[GatewayRequest]:
        with self._lock:
            return [r for r in self.calls if self._matches(key, r)]

    def reset(self) -> None:
        """Clear call history and remaining scripts."""
        with self._lock:
            self.calls.clear()
            self._scripts.clear()
