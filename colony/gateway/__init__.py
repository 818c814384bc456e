"""Colony Gateway: uniform contract for tool and model invocation."""

from colony.gateway.base import BoundedGateway, ModelGateway, RoutingGateway, ToolGateway
from colony.gateway.mock import MockGateway
from colony.gateway.models import GatewayRequest, GatewayResponse, RequestKind, ResponseStatus

__all__ = [
    "BoundedGateway",
    "GatewayRequest",
    "GatewayResponse",
    "MockGateway",
    "ModelGateway",
    "RequestKind",
    "ResponseStatus",
    "RoutingGateway",
    "ToolGateway",
]
