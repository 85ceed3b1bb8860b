"""
Stream session management for the CLG MCP Server.
This module provides the in-memory registry of live SSE sessions and their delivery channels.
"""

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from clg_mcp.error_handling.exceptions import SessionLimitError, SessionNotFoundError, SinkClosedError

logger = logging.getLogger(__name__)

CONNECTED_EVENT = 'connected'
RESPONSE_EVENT = 'tool-response'
HEARTBEAT_EVENT = 'heartbeat'


@dataclass(frozen=True)
class SSEMessage:
    """One SSE frame: `event:`, optional `id:` / `retry:`, and a data payload."""
    event: str
    data: str
    id: Optional[str] = None
    retry: Optional[int] = None

    @classmethod
    def from_payload(cls, event: str, payload: Any, id: Optional[str] = None) -> "SSEMessage":
        return cls(event=event, data=json.dumps(payload), id=id)


class SessionChannel:
    """
    Outbound message queue of one stream session.

    The registry and dispatch side only ever `send`; the SSE handler owning the
    HTTP response drains the channel with `receive` and writes the frames.
    A bounded queue that fills up counts as a dead consumer.
    """

    def __init__(self, maxsize: int = 256):
        self._queue: "asyncio.Queue[Optional[SSEMessage]]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: SSEMessage) -> None:
        """
        Enqueue a frame without blocking.

        Raises:
            SinkClosedError: If the channel is closed or its consumer stopped draining it
        """
        if self._closed:
            raise SinkClosedError()
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            raise SinkClosedError("Stream sink is saturated")

    async def receive(self) -> Optional[SSEMessage]:
        """Next frame, or None once the channel is closed."""
        if self._closed:
            return None
        message = await self._queue.get()
        if self._closed:
            return None
        return message

    def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        # Wake the consumer; drop the oldest frame if the queue is full so the marker fits
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()


@dataclass
class StreamSession:
    """A live SSE connection: identity, output channel and activity timestamps."""
    id: str
    sink: SessionChannel
    created_at: float
    last_activity: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def idle_for(self, now: float) -> float:
        return now - self.last_activity


def generate_session_id(clock: Callable[[], float] = time.time) -> str:
    """Millisecond timestamp plus 48 random bits."""
    return f"conn_{int(clock() * 1000)}_{secrets.token_hex(6)}"


class ConnectionRegistry:
    """
    Owns every live StreamSession.

    Mutations are single dict operations and never await, so each one is atomic on the
    event loop. Periodic work iterates over a snapshot of the table and re-checks
    membership before acting, so sessions opened or closed meanwhile are unaffected.
    """

    def __init__(
        self,
        heartbeat_interval: float = 30.0,
        idle_multiplier: float = 3,
        max_sessions: int = 100,
        queue_maxsize: int = 256,
        clock: Callable[[], float] = time.time,
    ):
        self.heartbeat_interval = heartbeat_interval
        self.idle_threshold = heartbeat_interval * idle_multiplier
        self.max_sessions = max_sessions
        self.queue_maxsize = queue_maxsize
        self._clock = clock
        self._sessions: Dict[str, StreamSession] = {}
        self._maintenance_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ConnectionRegistry":
        sse_config = config.get('sse', {})
        return cls(
            heartbeat_interval=sse_config.get('heartbeat_interval_seconds', 30),
            idle_multiplier=sse_config.get('idle_multiplier', 3),
            max_sessions=sse_config.get('max_connections', 100),
            queue_maxsize=sse_config.get('queue_maxsize', 256),
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def create_channel(self) -> SessionChannel:
        return SessionChannel(maxsize=self.queue_maxsize)

    def open(self, sink: SessionChannel, **metadata: Any) -> str:
        """
        Register a new session for `sink` and return its id.

        Raises:
            SessionLimitError: If `max_sessions` sessions are already live
        """
        if len(self._sessions) >= self.max_sessions:
            raise SessionLimitError(self.max_sessions)
        session_id = generate_session_id(self._clock)
        while session_id in self._sessions:
            session_id = generate_session_id(self._clock)
        now = self._clock()
        self._sessions[session_id] = StreamSession(
            id=session_id, sink=sink, created_at=now, last_activity=now, metadata=metadata,
        )
        logger.info(f"Session opened: {session_id} (total: {len(self._sessions)})")
        return session_id

    def lookup(self, session_id: Optional[str]) -> Optional[StreamSession]:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity = self._clock()

    def close(self, session_id: str) -> bool:
        """Close the session's sink and forget it. Returns False if it was not registered."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        try:
            session.sink.close()
        except Exception as e:
            logger.debug(f"Sink of {session_id} failed to close cleanly: {e}")
        logger.info(f"Session closed: {session_id} (remaining: {len(self._sessions)})")
        return True

    def deliver(self, session_id: str, message: SSEMessage) -> None:
        """
        Push a frame to a live session.

        Raises:
            SessionNotFoundError: If the session is gone; it is never recreated
            SinkClosedError: If the sink refused the frame; the session is removed first
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        try:
            session.sink.send(message)
        except SinkClosedError:
            logger.warning(f"Delivery to {session_id} failed, removing session")
            self.close(session_id)
            raise
        session.last_activity = self._clock()

    def sweep(self, now: Optional[float] = None, idle_threshold: Optional[float] = None) -> List[str]:
        """Close every session idle for strictly longer than `idle_threshold`. Returns the closed ids."""
        now = self._clock() if now is None else now
        threshold = self.idle_threshold if idle_threshold is None else idle_threshold
        expired = [sid for sid, session in list(self._sessions.items()) if session.idle_for(now) > threshold]
        closed = []
        for session_id in expired:
            session = self._sessions.get(session_id)
            # Touched since the snapshot: leave it alone
            if session is None or session.idle_for(now) <= threshold:
                continue
            logger.info(f"Evicting idle session {session_id} (idle {session.idle_for(now):.1f}s)")
            self.close(session_id)
            closed.append(session_id)
        return closed

    def broadcast_heartbeat(self) -> List[str]:
        """
        Send one heartbeat frame to every live session.

        A session whose sink refuses the frame is removed immediately.
        Returns the ids that were removed.
        """
        message = SSEMessage.from_payload(HEARTBEAT_EVENT, {'timestamp': int(self._clock() * 1000)})
        dead = []
        for session_id in list(self._sessions):
            try:
                self.deliver(session_id, message)
            except SessionNotFoundError:
                continue
            except SinkClosedError:
                dead.append(session_id)
        if dead:
            logger.info(f"Heartbeat removed {len(dead)} dead session(s)")
        return dead

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                self.broadcast_heartbeat()
                self.sweep()
            except Exception:
                logger.exception("Error during session maintenance")

    def start(self) -> None:
        """Start the periodic heartbeat + idle sweep task."""
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
            logger.info(
                f"Session maintenance started: heartbeat={self.heartbeat_interval}s, idle threshold={self.idle_threshold}s"
            )

    async def stop(self) -> None:
        """Cancel the maintenance task and close every session."""
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        self.close_all()
