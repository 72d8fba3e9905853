"""Live delivery of new notifications to connected clients.

Delivery is best effort: each payload is handed at most once to every client
session the user has open at that moment. Nothing is queued for offline users
and nothing is retried; the inbox in the store of record is the durable copy.

- LiveDeliveryChannel: the pipeline-facing entry point; never raises
- InMemoryDeliveryHub: in-process DeliveryTransport with one asyncio queue per
  client session (a websocket endpoint drains ``ClientSession.receive()``)

Example:
    >>> hub = InMemoryDeliveryHub()
    >>> session = hub.connect(user_id)
    >>> channel = LiveDeliveryChannel(hub)
    >>> await channel.deliver(user_id, {"type": "mention", "title": "Ann mentioned you"})
    1
    >>> await session.receive()
    {'event': 'notification', 'data': {...}}
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from socialsync.interfaces import DeliveryTransport
from socialsync.logging import logger
from socialsync.metrics import errors_total, live_deliveries_total
from socialsync.utils import new_id, utc_now

NOTIFICATION_EVENT = "notification"


# =============================================================================
# In-Process Transport
# =============================================================================


@dataclass
class ClientSession:
    """One connected client of a user."""

    session_id: str
    user_id: str
    queue: asyncio.Queue
    connected_at: Any = field(default_factory=utc_now)

    async def receive(self, timeout: float | None = None) -> dict[str, Any]:
        """Wait for the next message of this session.

        Raises:
            TimeoutError: If ``timeout`` elapses first
        """
        if timeout is None:
            return await self.queue.get()
        async with asyncio.timeout(timeout):
            return await self.queue.get()

    def pending(self) -> int:
        return self.queue.qsize()


class InMemoryDeliveryHub:
    """Addresses client sessions by user id.

    Args:
        max_queue_size: Per-session buffer; messages beyond it are dropped
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._sessions: dict[str, ClientSession] = {}
        self._by_user: defaultdict[str, set[str]] = defaultdict(set)

    def connect(self, user_id: str, session_id: str | None = None) -> ClientSession:
        """Open a session for a user."""
        session = ClientSession(
            session_id=session_id or new_id(),
            user_id=user_id,
            queue=asyncio.Queue(maxsize=self.max_queue_size),
        )
        self._sessions[session.session_id] = session
        self._by_user[user_id].add(session.session_id)
        logger.debug(
            f"Client session {session.session_id} connected for user {user_id} "
            f"({len(self._sessions)} active)"
        )
        return session

    def disconnect(self, session_id: str) -> None:
        """Close a session; unknown ids are ignored."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        members = self._by_user.get(session.user_id)
        if members is not None:
            members.discard(session_id)
            if not members:
                del self._by_user[session.user_id]
        logger.debug(f"Client session {session_id} disconnected ({len(self._sessions)} active)")

    def sessions_for(self, user_id: str) -> list[ClientSession]:
        return [self._sessions[sid] for sid in self._by_user.get(user_id, ())]

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def deliver(self, user_id: str, payload: dict[str, Any]) -> int:
        delivered = 0
        for session in self.sessions_for(user_id):
            try:
                session.queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"⚠️ Dropping live message for slow session {session.session_id}")
        return delivered


# =============================================================================
# Delivery Channel
# =============================================================================


class LiveDeliveryChannel:
    """Pushes notification payloads through a DeliveryTransport.

    Args:
        transport: User-addressed client push transport
    """

    def __init__(self, transport: DeliveryTransport) -> None:
        self.transport = transport

    async def deliver(self, user_id: str, notification: dict[str, Any]) -> int:
        """Push one notification to the user's connected sessions.

        Returns:
            Number of sessions reached; 0 when the transport failed
        """
        message = {"event": NOTIFICATION_EVENT, "data": notification}
        try:
            delivered = await self.transport.deliver(user_id, message)
        except Exception as exc:  # noqa: BLE001 - delivery never fails ingestion
            errors_total.labels(error_type=type(exc).__name__, component="delivery").inc()
            logger.warning(f"⚠️ Live delivery to user {user_id} failed: {exc}")
            return 0

        if delivered:
            live_deliveries_total.inc(delivered)
        return delivered


__all__ = [
    "NOTIFICATION_EVENT",
    "ClientSession",
    "InMemoryDeliveryHub",
    "LiveDeliveryChannel",
]
