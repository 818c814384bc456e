"""
Gateway implementations.

Every gateway bounds each call by ``request.timeout`` and maps failures onto
response statuses. Gateways never retry; retry policy belongs to the swarm
coordinator.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any

from colony.errors import GatewayError, GatewayTimeout, GatewayUnavailable
from colony.gateway.models import GatewayRequest, GatewayResponse, RequestKind
from colony.logging import get_logger
from colony.protocols.gateway import Gateway
from colony.protocols.intelligence import IntelligenceProvider

logger = get_logger("gateway")


class BoundedGateway:
    """Runs handlers on a bounded thread pool and enforces call timeouts."""

    def __init__(self, max_concurrent_calls: int = 16, name: str = "gateway"):
        self.name = name
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_calls, thread_name_prefix=f"colony-{name}"
        )

    def _call(self, request: GatewayRequest, fn: Callable[[], Any]) -> GatewayResponse:
        start = time.monotonic()
        future = self._executor.submit(fn)
        try:
            payload = future.result(timeout=request.timeout)
        except FuturesTimeout:
            future.cancel()
            elapsed = time.monotonic() - start
            logger.warning(f"{request.describe()} timed out after {request.timeout:.2f}s")
            return GatewayResponse.timed_out(
                f"{request.describe()} exceeded {request.timeout:.2f}s", elapsed
            )
        except (GatewayTimeout, TimeoutError) as exc:
            return GatewayResponse.timed_out(str(exc), time.monotonic() - start)
        except (GatewayUnavailable, ConnectionError) as exc:
            logger.warning(f"{request.describe()} unavailable: {exc}")
            return GatewayResponse.unavailable(str(exc), time.monotonic() - start)
        except GatewayError as exc:
            return GatewayResponse.failed(str(exc), time.monotonic() - start)
        except Exception as exc:
            logger.error(f"{request.describe()} raised {type(exc).__name__}: {exc}")
            return GatewayResponse.failed(
                f"{type(exc).__name__}: {exc}", time.monotonic() - start
            )
        return GatewayResponse.success(payload, time.monotonic() - start)

    def close(self) -> None:
        """Stop accepting calls. In-flight handlers are abandoned."""
        self._executor.shutdown(wait=False, cancel_futures=True)


class ToolGateway(BoundedGateway):
    """Gateway over a registry of named tool callables."""

    def __init__(
        self,
        tools: dict[str, Callable[..., Any]] | None = None,
        max_concurrent_calls: int = 16,
    ):
        super().__init__(max_concurrent_calls, name="tools")
        self._tools: dict[str, Callable[..., Any]] = dict(tools or {})

    def register(self, name: str, handler: Callable[..., Any]) -> None:
        self._tools[name] = handler
        logger.debug(f"Registered tool {name!r}")

    def list_tools(self) -> list[str]:
        return sorted(self._tools)

    def invoke(self, request: GatewayRequest) -> GatewayResponse:
        if request.kind != RequestKind.TOOL:
            return GatewayResponse.failed(f"ToolGateway cannot serve {request.kind.value} requests")
        handler = self._tools.get(request.name)
        if handler is None:
            return GatewayResponse.failed(f"Unknown tool {request.name!r}")
        return self._call(request, lambda: handler(**request.arguments))


class ModelGateway(BoundedGateway):
    """Gateway over a language-model completion provider."""

    def __init__(self, provider: IntelligenceProvider, max_concurrent_calls: int = 4):
        super().__init__(max_concurrent_calls, name="model")
        self.provider = provider

    def invoke(self, request: GatewayRequest) -> GatewayResponse:
        if request.kind != RequestKind.MODEL:
            return GatewayResponse.failed(
                f"ModelGateway cannot serve {request.kind.value} requests"
            )
        prompt = request.arguments.get("prompt")
        if not prompt:
            return GatewayResponse.failed("Model request is missing 'prompt'")
        system = request.arguments.get("system")
        return self._call(request, lambda: self.provider.generate(prompt, system))


class RoutingGateway:
    """Dispatches requests to a tool or model gateway by kind."""

    def __init__(self, tools: Gateway | None = None, model: Gateway | None = None):
        self._routes: dict[RequestKind, Gateway | None] = {
            RequestKind.TOOL: tools,
            RequestKind.MODEL: model,
        }

    def invoke(self, request: GatewayRequest) -> GatewayResponse:
        target = self._routes.get(request.kind)
        if target is None:
            return GatewayResponse.unavailable(f"No gateway configured for {request.kind.value}")
        return target.invoke(request)

    def close(self) -> None:
        for target in self._routes.values():
            close = getattr(target, "close", None)
            if close is not None:
                close()
