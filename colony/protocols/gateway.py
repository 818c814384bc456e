"""Protocol for tool/model gateways."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from colony.gateway.models import GatewayRequest, GatewayResponse


@runtime_checkable
class Gateway(Protocol):
    """Structural interface for anything that can serve a gateway request."""

    def invoke(self, request: GatewayRequest) -> GatewayResponse: ...
