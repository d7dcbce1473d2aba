"""
Offline outbox: a durable queue of messages that could not be sent.

Messages are appended when a send fails or the client is offline and are
replayed by sync(), typically triggered by a reconnect event.

Sync policy: every queued message is visited at most once per sync, in
insertion order. A message whose previous attempt failed carries a
``next_attempt_at`` (now + base_delay * 2^(retry_count - 1)); until that
time passes it is deferred to a later sync rather than waited on, so one
failing message never stalls the rest of the batch.

Usage:
    outbox = Outbox(JsonFileStorage("~/.discovery/outbox.json"))
    outbox.enqueue(QueuedMessage.create("chat-1", "user", "hello"))
    unsubscribe = outbox.setup_auto_sync(monitor, transport)
"""

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Awaitable, Callable
from uuid import uuid4

from resilience import UpstreamServiceError
from utils.events import EventEmitter

from .storage import KeyValueStorage, MemoryStorage

logger = logging.getLogger(__name__)

QUEUE_KEY = "discovery_message_queue"
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds


@dataclass
class QueuedMessage:
    """A message waiting for delivery."""

    id: str
    conversation_id: str
    role: str  # "user" or "assistant"
    content: str
    enqueued_at: float = field(default_factory=time.time)
    retry_count: int = 0
    attachments: list[str] = field(default_factory=list)  # references, not payloads
    next_attempt_at: float | None = None

    @classmethod
    def create(
        cls,
        conversation_id: str,
        role: str,
        content: str,
        attachments: list[str] | None = None,
    ) -> "QueuedMessage":
        return cls(
            id=str(uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            attachments=list(attachments or []),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "QueuedMessage":
        return cls(
            id=str(data["id"]),
            conversation_id=str(data.get("conversation_id", "")),
            role=str(data.get("role", "user")),
            content=str(data.get("content", "")),
            enqueued_at=float(data.get("enqueued_at") or time.time()),
            retry_count=int(data.get("retry_count", 0)),
            attachments=list(data.get("attachments") or []),
            next_attempt_at=data.get("next_attempt_at"),
        )


@dataclass
class SyncReport:
    """Aggregate outcome of one sync pass."""

    success: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: bool = False  # another sync was already in flight

    def to_dict(self) -> dict:
        return asdict(self)


SendFn = Callable[[QueuedMessage], Awaitable[Any]]


class Outbox(EventEmitter):
    """
    Durable message queue with replay on reconnect.

    enqueue/dequeue never raise: storage errors are logged and swallowed,
    and corrupt stored data reads as an empty queue.

    Args:
        storage: KeyValueStorage holding the queue as JSON.
        key: Storage key of the queue.
        max_retries: Failed attempts after which a message is dropped.
        base_delay: Backoff base in seconds.
        clock: Wall-clock source (seconds), injectable for tests.
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        *,
        key: str = QUEUE_KEY,
        max_retries: int = MAX_RETRIES,
        base_delay: float = RETRY_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        self.__init_events__()
        self.storage = storage if storage is not None else MemoryStorage()
        self.key = key
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._clock = clock
        self._syncing = False
        self._pending: set[asyncio.Task] = set()
        self.failed_messages: list[QueuedMessage] = []

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def get_queue(self) -> list[QueuedMessage]:
        """All queued messages, in insertion order."""
        try:
            stored = self.storage.get(self.key)
        except Exception as e:
            logger.error("Failed to read outbox: %s", e)
            return []
        if not stored:
            return []

        try:
            items = json.loads(stored)
        except ValueError as e:
            logger.error("Outbox data is corrupt, treating as empty: %s", e)
            return []
        if not isinstance(items, list):
            logger.error("Outbox data is not a list, treating as empty")
            return []

        queue = []
        for item in items:
            try:
                queue.append(QueuedMessage.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed queued message: %s", e)
        return queue

    def _save_queue(self, queue: list[QueuedMessage]):
        try:
            self.storage.set(self.key, json.dumps([m.to_dict() for m in queue]))
        except Exception as e:
            logger.error("Failed to save outbox: %s", e)

    def enqueue(self, message: QueuedMessage | Mapping) -> QueuedMessage:
        """Append a message with a fresh retry count."""
        if isinstance(message, Mapping):
            message = QueuedMessage.from_dict({"id": str(uuid4()), **message})
        message = replace(message, retry_count=0, next_attempt_at=None, enqueued_at=self._clock())

        queue = self.get_queue()
        queue.append(message)
        self._save_queue(queue)
        logger.info("Queued message %s", message.id)
        return message

    def dequeue(self, message_id: str):
        """Remove a message by id (no-op if absent)."""
        queue = self.get_queue()
        self._save_queue([m for m in queue if m.id != message_id])
        logger.debug("Dequeued message %s", message_id)

    def _update(self, message: QueuedMessage):
        queue = [message if m.id == message.id else m for m in self.get_queue()]
        self._save_queue(queue)

    def count(self) -> int:
        return len(self.get_queue())

    def clear(self):
        try:
            self.storage.remove(self.key)
        except Exception as e:
            logger.error("Failed to clear outbox: %s", e)
            return
        logger.info("Cleared outbox")

    @property
    def syncing(self) -> bool:
        return self._syncing

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def retry_delay(self, retry_count: int) -> float:
        """Backoff after the ``retry_count``-th failure."""
        return self.base_delay * (2 ** max(0, retry_count - 1))

    async def sync(self, send_fn: SendFn) -> SyncReport:
        """
        Attempt delivery of every due message once.

        ``send_fn`` fails by raising or by returning a mapping with an
        ``error`` entry. Returns counts; never raises for delivery failures.
        """
        if self._syncing:
            logger.info("Outbox sync already in progress, skipping")
            return SyncReport(skipped=True)

        self._syncing = True
        report = SyncReport()
        try:
            queue = self.get_queue()
            logger.info("Syncing %d queued messages...", len(queue))

            for message in queue:
                if message.next_attempt_at is not None and message.next_attempt_at > self._clock():
                    report.deferred += 1
                    continue

                try:
                    outcome = await send_fn(message)
                    if isinstance(outcome, Mapping) and outcome.get("error"):
                        raise UpstreamServiceError("message transport", str(outcome["error"]))
                except Exception as e:
                    self._record_failure(message, e, report)
                    continue

                self.dequeue(message.id)
                report.success += 1
                logger.debug("Synced message %s", message.id)
        finally:
            self._syncing = False

        logger.info(
            "Sync complete: %d success, %d failed, %d deferred",
            report.success, report.failed, report.deferred,
        )
        self.emit("outbox_sync_complete", report.to_dict())
        return report

    def _record_failure(self, message: QueuedMessage, error: Exception, report: SyncReport):
        message.retry_count += 1

        if message.retry_count >= self.max_retries:
            logger.error(
                "Message %s failed %d times, dropping: %s", message.id, message.retry_count, error
            )
            self.dequeue(message.id)
            self.failed_messages.append(message)
            report.failed += 1
            self.emit("message_failed", {
                "message_id": message.id,
                "conversation_id": message.conversation_id,
                "retry_count": message.retry_count,
                "error": str(error),
            })
            return

        message.next_attempt_at = self._clock() + self.retry_delay(message.retry_count)
        logger.warning(
            "Sync failed for message %s (attempt %d/%d): %s",
            message.id, message.retry_count, self.max_retries, error,
        )
        self._update(message)

    # -------------------------------------------------------------------------
    # Auto-sync
    # -------------------------------------------------------------------------

    def setup_auto_sync(self, source: EventEmitter, send_fn: SendFn) -> Callable[[], None]:
        """
        Sync once per ``online`` event from ``source`` while the queue is non-empty.

        Must be triggered from inside a running event loop. Returns a
        callable that unsubscribes.
        """

        def handle_online(event: dict):
            if self.count() == 0:
                return
            logger.info("Connection restored, syncing outbox...")
            task = asyncio.get_running_loop().create_task(self.sync(send_fn))
            self._pending.add(task)
            task.add_done_callback(self._sync_done)

        source.on("online", handle_online)

        def unsubscribe():
            source.off("online", handle_online)

        return unsubscribe

    def _sync_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Auto-sync failed: %s", task.exception())

    async def drain(self):
        """Wait for auto-sync passes that are still running."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
