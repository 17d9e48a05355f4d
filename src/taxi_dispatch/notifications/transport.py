"""Messaging transport — pluggable interface to the chat gateway.

Learn: The dispatch core never talks to a chat protocol directly. It needs
five primitives, and each transport knows how to provide them:

1. send(identity, payload)        — may fail transiently
2. presence_update(identity, st)  — "composing" before client messages
3. is_connected()                 — liveness check for the health monitor
4. reconnect()                    — bounded reconnection attempt
5. repair_session(identity)       — reset a desynchronized encryption session

Failures are classified here, at the edge: a session/key desync becomes
SessionCorruption, everything else retryable becomes TransientSendFailure.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog

from taxi_dispatch.errors import SessionCorruption, TransientSendFailure

logger = structlog.get_logger()

# Markers the gateway reports when the signal session with a contact is corrupt.
SESSION_ERROR_MARKERS = ("bad mac", "session_corrupt", "no session", "decrypt")


def is_session_error(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in SESSION_ERROR_MARKERS)


class MessagingTransport(ABC):
    """Abstract base for outbound messaging transports."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Transport identifier, e.g. 'http_gateway'."""

    @abstractmethod
    async def send(self, identity: str, payload: dict[str, Any]) -> None:
        """Deliver one payload ({"text": ...} or {"location": {...}}).

        Raises:
            SessionCorruption: the recipient's session needs repair
            TransientSendFailure: any other retryable failure
        """

    @abstractmethod
    async def presence_update(self, identity: str, state: str) -> None:
        """Show a presence state ("composing", "paused") to the recipient."""

    @abstractmethod
    async def is_connected(self) -> bool:
        """Cheap liveness check."""

    @abstractmethod
    async def reconnect(self) -> None:
        """Ask the transport to re-establish its connection."""

    @abstractmethod
    async def repair_session(self, identity: str) -> None:
        """Drop the cached session with `identity` so the next send renegotiates."""

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""


class HttpGatewayTransport(MessagingTransport):
    """Transport backed by an HTTP messaging gateway.

    Learn: The gateway process holds the actual chat-protocol connection.
    We address recipients by JID ("<country><phone>@s.whatsapp.net") and
    map gateway errors onto our retry taxonomy.

    Endpoints:
        POST /messages                 {"to": jid, "text": ...} | {"to": jid, "location": {...}}
        POST /presence                 {"to": jid, "state": ...}
        GET  /status                   {"connected": bool}
        POST /reconnect
        DELETE /sessions/{jid}
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        country_code: str = "57",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.country_code = country_code
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    @property
    def name(self) -> str:
        return "http_gateway"

    def jid(self, identity: str) -> str:
        if "@" in identity:
            return identity
        return f"{self.country_code}{identity}@s.whatsapp.net"

    async def send(self, identity: str, payload: dict[str, Any]) -> None:
        try:
            resp = await self._client.post(
                "/messages", json={"to": self.jid(identity), **payload}
            )
        except httpx.HTTPError as e:
            raise TransientSendFailure(identity, f"gateway unreachable: {e}") from e
        self._raise_for_status(identity, resp)

    async def presence_update(self, identity: str, state: str) -> None:
        try:
            resp = await self._client.post(
                "/presence", json={"to": self.jid(identity), "state": state}
            )
        except httpx.HTTPError as e:
            raise TransientSendFailure(identity, f"gateway unreachable: {e}") from e
        self._raise_for_status(identity, resp)

    async def is_connected(self) -> bool:
        try:
            resp = await self._client.get("/status")
        except httpx.HTTPError:
            return False
        if resp.status_code != 200:
            return False
        return bool(resp.json().get("connected"))

    async def reconnect(self) -> None:
        resp = await self._client.post("/reconnect")
        resp.raise_for_status()

    async def repair_session(self, identity: str) -> None:
        resp = await self._client.delete(f"/sessions/{self.jid(identity)}")
        if resp.status_code not in (200, 204, 404):
            resp.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _raise_for_status(identity: str, resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            detail = str(resp.json().get("error", resp.text))
        except ValueError:
            detail = resp.text
        message = f"gateway returned {resp.status_code}: {detail}"
        if is_session_error(detail):
            raise SessionCorruption(identity, message)
        raise TransientSendFailure(identity, message)
