from __future__ import annotations

import json
from typing import Any, AsyncIterator, Mapping, Protocol, runtime_checkable

import httpx

from ..core.config import AgentGatewaySettings
from ..core.logging import get_logger
from .agents import AgentProfile
from .events import TransportEvent

logger = get_logger(name=__name__)


@runtime_checkable
class AgentTransport(Protocol):
    """Delegated agent-call interface.

    ``invoke`` streams chunk, tool-call and permission events followed by a
    single ``completed`` or ``failed`` event. Payloads may be typed events or
    raw mappings; the orchestrator validates them on receipt.
    """

    def invoke(
        self,
        agent: AgentProfile,
        input_text: str,
        *,
        correlation_id: str,
    ) -> AsyncIterator[TransportEvent | Mapping[str, Any]]:
        ...

    async def cancel(self, correlation_id: str) -> None:
        ...

    async def respond_permission(self, correlation_id: str, request_id: str, option_id: str) -> None:
        ...


class HttpAgentTransport:
    """Talks to an agent gateway that streams newline-delimited JSON events.

    ``POST {base_url}/agents/{agent_id}/invoke`` streams one event per line.
    Cancellation and permission answers are plain JSON posts keyed by the
    correlation id.
    """

    def __init__(self, settings: AgentGatewaySettings, *, client: httpx.AsyncClient | None = None) -> None:
        if not settings.base_url:
            raise ValueError("Agent gateway base_url is not configured")
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.timeout_seconds),
            verify=settings.verify_ssl,
        )

    async def invoke(
        self,
        agent: AgentProfile,
        input_text: str,
        *,
        correlation_id: str,
    ) -> AsyncIterator[Mapping[str, Any]]:
        body = {"correlation_id": correlation_id, "input": input_text, "model": agent.model}
        async with self._client.stream("POST", f"/agents/{agent.id}/invoke", json=body) as response:
            if response.status_code >= 400:
                await response.aread()
                yield {"kind": "failed", "error": f"Agent gateway returned {response.status_code}: {response.text}"}
                return
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("agent_gateway_line_invalid", agent_id=agent.id, line=line[:200])
                    continue
                if isinstance(payload, dict):
                    yield payload

    async def cancel(self, correlation_id: str) -> None:
        response = await self._client.post("/invocations/cancel", json={"correlation_id": correlation_id})
        response.raise_for_status()

    async def respond_permission(self, correlation_id: str, request_id: str, option_id: str) -> None:
        response = await self._client.post(
            "/invocations/permissions",
            json={"correlation_id": correlation_id, "request_id": request_id, "option_id": option_id},
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


__all__ = ["AgentTransport", "HttpAgentTransport"]
