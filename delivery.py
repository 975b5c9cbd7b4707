"""Durable, ordered message delivery to connected sessions.

The broker is the single writer of the messages table. publish() assigns the
stream's next sequence number and persists the message in one store
transaction, then enqueues it on every live session of the stream's owner.
Each session owns a FIFO queue drained by its own writer task, so a slow or
broken connection never blocks the others and per-stream order holds within
every session.

A session that fails a send is dropped from the table. The message stays in
the store; the client catches up with replay_since(stream_id, last_seen_seq)
after reconnecting. enqueue_replay() queues that catch-up ahead of live frames
already waiting for the session, so it arrives in seq order.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Any

from database import Database
from errors import NotFound
from models.messages import Message, Payload
from scheduling import utcnow

logger = logging.getLogger(__name__)


class Session(ABC):
    """One authenticated client connection.

    Attributes:
        id: Connection id
        owner: Authenticated user id
    """

    def __init__(self, owner: str, session_id: str | None = None):
        self.owner = owner
        self.id = session_id or uuid.uuid4().hex[:12]

    @abstractmethod
    async def send(self, event: str, data: Any) -> None:
        """Write one event frame. Raise DeliveryFailure (or any error) on failure."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id}, owner={self.owner})"


class _Outbox:
    def __init__(self, session: Session):
        self.session = session
        self.queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self.writer: asyncio.Task | None = None


class DeliveryBroker:
    """Connection table keyed by owner id, plus the durable message log."""

    def __init__(self, db: Database):
        self.db = db
        self._sessions: dict[str, dict[str, _Outbox]] = defaultdict(dict)

    # === Connection table ===

    def register(self, session: Session) -> None:
        """Add a session and start its writer task."""
        outbox = _Outbox(session)
        outbox.writer = asyncio.create_task(self._drain(outbox), name=f"writer-{session.id}")
        self._sessions[session.owner][session.id] = outbox
        logger.info("Session registered | owner=%s session=%s", session.owner, session.id)

    async def unregister(self, session: Session) -> None:
        """Remove a session and stop its writer. Unknown sessions are ignored."""
        outbox = self._detach(session)
        if outbox is None or outbox.writer is None:
            return
        outbox.writer.cancel()
        try:
            await outbox.writer
        except asyncio.CancelledError:
            pass
        logger.info("Session unregistered | owner=%s session=%s", session.owner, session.id)

    def _detach(self, session: Session) -> _Outbox | None:
        owned = self._sessions.get(session.owner)
        if not owned:
            return None
        outbox = owned.pop(session.id, None)
        if not owned:
            del self._sessions[session.owner]
        return outbox

    def sessions_for(self, owner: str) -> list[Session]:
        return [outbox.session for outbox in self._sessions.get(owner, {}).values()]

    def session_count(self) -> int:
        return sum(len(owned) for owned in self._sessions.values())

    async def _drain(self, outbox: _Outbox) -> None:
        session = outbox.session
        while True:
            event, data = await outbox.queue.get()
            try:
                await session.send(event, data)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Delivery failed, dropping session | owner=%s session=%s error=%s",
                    session.owner, session.id, e,
                )
                self._detach(session)
                outbox.queue.task_done()
                # Release anyone waiting on flush() for the undelivered backlog
                while not outbox.queue.empty():
                    outbox.queue.get_nowait()
                    outbox.queue.task_done()
                return
            outbox.queue.task_done()

    # === Publishing ===

    def publish(self, stream_id: str, payload: Payload, timestamp: datetime | None = None) -> Message:
        """Persist a message with the stream's next sequence number and fan it out.

        Raises:
            NotFound: If the stream does not exist
        """
        stream = self.db.get_stream(stream_id)
        if stream is None:
            raise NotFound("stream", stream_id)
        message = self.db.append_message(stream_id, payload, timestamp or utcnow())
        data = message.to_wire()
        outboxes = list(self._sessions.get(stream.owner, {}).values())
        for outbox in outboxes:
            outbox.queue.put_nowait(("message", data))
        logger.debug(
            "Message published | stream=%s seq=%d kind=%s sessions=%d",
            stream_id, message.seq, message.kind, len(outboxes),
        )
        return message

    def broadcast(self, owner: str, event: str, data: Any) -> int:
        """Queue a non-durable control event for every session of an owner.

        Returns:
            Number of sessions the event was queued for
        """
        outboxes = list(self._sessions.get(owner, {}).values())
        for outbox in outboxes:
            outbox.queue.put_nowait((event, data))
        return len(outboxes)

    def enqueue(self, session: Session, event: str, data: Any) -> bool:
        """Queue an event for one registered session, behind anything already queued."""
        outbox = self._sessions.get(session.owner, {}).get(session.id)
        if outbox is None:
            return False
        outbox.queue.put_nowait((event, data))
        return True

    def replay_since(self, stream_id: str, seq: int) -> list[Message]:
        """Messages with sequence > seq, ascending. Side-effect free."""
        return self.db.messages_since(stream_id, seq)

    def enqueue_replay(self, session: Session, stream_id: str, seq: int) -> list[Message] | None:
        """Queue a stream's messages after `seq` ahead of anything already queued.

        Live frames for the same stream still waiting in the queue are dropped,
        since the replay carries them in order. A frame already being written
        when the replay is queued may arrive once more; clients skip seqs they
        have seen.

        Returns:
            The replayed messages, or None if the session is not registered
        """
        outbox = self._sessions.get(session.owner, {}).get(session.id)
        if outbox is None:
            return None
        messages = self.replay_since(stream_id, seq)
        replayed = {message.seq for message in messages}

        pending: list[tuple[str, Any]] = []
        while not outbox.queue.empty():
            pending.append(outbox.queue.get_nowait())
            outbox.queue.task_done()
        for message in messages:
            outbox.queue.put_nowait(("message", message.to_wire()))
        for event, data in pending:
            if event == "message" and data["streamId"] == stream_id and data["seq"] in replayed:
                continue
            outbox.queue.put_nowait((event, data))

        logger.debug(
            "Replay queued | session=%s stream=%s since=%d messages=%d",
            session.id, stream_id, seq, len(messages),
        )
        return messages

    async def flush(self) -> None:
        """Wait until every queued event has been written or dropped."""
        queues = [outbox.queue for owned in self._sessions.values() for outbox in owned.values()]
        await asyncio.gather(*(queue.join() for queue in queues))

    async def close(self) -> None:
        """Stop all writer tasks."""
        for owned in list(self._sessions.values()):
            for outbox in list(owned.values()):
                await self.unregister(outbox.session)

