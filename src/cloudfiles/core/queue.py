"""Durable FIFO queue of items awaiting background artifact generation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol
from uuid import uuid4

from cloudfiles.config import QueueSettings
from cloudfiles.core.engine import SyncResult
from cloudfiles.storage import Database

QUEUE_OPTION = "thumbnail_queue"
LOCK_NAME = "thumbnail_queue_lock"
PROCESS_HOOK = "process_thumbnail_queue"


class ItemProcessor(Protocol):
    """Anything that can run the background job for one item."""

    def fetch_generate_upload(self, item_id: int, *, force: bool = False) -> SyncResult:
        """Process a single item."""


@dataclass(slots=True)
class PassResult:
    """What one worker pass did."""

    ran: bool
    item_id: Optional[int] = None
    result: Optional[SyncResult] = None
    remaining: int = 0
    rescheduled: bool = False


@dataclass(slots=True)
class ThumbnailQueue:
    """Queue stored in one option slot, drained one item per locked pass."""

    database: Database
    processor: ItemProcessor
    settings: QueueSettings = field(default_factory=QueueSettings)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    owner: str = field(default_factory=lambda: uuid4().hex)

    def enqueue(self, item_id: int) -> bool:
        """Append `item_id` unless it is already queued; returns True when it was added."""

        added: list[int] = []

        def _append(current: Any) -> list[int]:
            queue = [int(value) for value in (current or [])]
            if item_id not in queue:
                queue.append(item_id)
                added.append(item_id)
            return queue

        self.database.mutate_option(QUEUE_OPTION, _append, [])
        if self.database.next_scheduled(PROCESS_HOOK) is None:
            self.database.schedule_event(PROCESS_HOOK, self.settings.initial_delay_seconds)
        if added:
            self.logger.debug("Queued item %s for background processing.", item_id)
        return bool(added)

    def pending(self) -> list[int]:
        return [int(value) for value in self.database.get_option(QUEUE_OPTION, []) or []]

    def run_pass(self) -> PassResult:
        """Process the head of the queue under the global lock.

        A pass that cannot take the lock returns immediately with `ran=False`. The popped id is
        persisted before processing, so a crash mid-item drops it rather than repeating it.
        """

        if not self.database.acquire_lock(LOCK_NAME, self.owner, self.settings.lock_seconds):
            self.logger.debug("Queue pass skipped; another worker holds the lock.")
            return PassResult(ran=False, remaining=len(self.pending()))

        try:
            popped: list[int] = []

            def _pop(current: Any) -> list[int]:
                queue = [int(value) for value in (current or [])]
                if queue:
                    popped.append(queue.pop(0))
                return queue

            remaining = self.database.mutate_option(QUEUE_OPTION, _pop, [])
            if not popped:
                return PassResult(ran=True)

            item_id = popped[0]
            self.logger.info("Processing queued item %s (%d remaining).", item_id, len(remaining))
            result: Optional[SyncResult] = None
            try:
                result = self.processor.fetch_generate_upload(item_id)
            except Exception:  # pylint: disable=broad-except
                self.logger.exception("Background processing of item %s failed.", item_id)

            left = len(self.pending())
            rescheduled = False
            if left:
                self.database.schedule_event(PROCESS_HOOK, self.settings.reschedule_seconds)
                rescheduled = True
            return PassResult(
                ran=True, item_id=item_id, result=result, remaining=left, rescheduled=rescheduled
            )
        finally:
            self.database.release_lock(LOCK_NAME, self.owner)

    def drain(self, limit: Optional[int] = None) -> list[PassResult]:
        """Run passes inline until the queue is empty, the limit is hit or the lock is busy."""

        results: list[PassResult] = []
        while limit is None or len(results) < limit:
            outcome = self.run_pass()
            if not outcome.ran or outcome.item_id is None:
                break
            results.append(outcome)
            if outcome.remaining == 0:
                break
        if not self.pending():
            self.database.clear_event(PROCESS_HOOK)
        return results

    async def serve(self, stop_event: asyncio.Event) -> int:
        """Run due passes until `stop_event` is set; returns the number of items processed."""

        processed = 0
        poll = self.settings.poll_seconds
        self.logger.info("Queue worker %s started (poll every %ss).", self.owner, poll)
        while not stop_event.is_set():
            if await asyncio.to_thread(self.database.pop_due_event, PROCESS_HOOK):
                outcome = await asyncio.to_thread(self.run_pass)
                if outcome.item_id is not None:
                    processed += 1
                if not outcome.ran and outcome.remaining:
                    await asyncio.to_thread(
                        self.database.schedule_event, PROCESS_HOOK, self.settings.reschedule_seconds
                    )
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll)
            except asyncio.TimeoutError:
                pass
        self.logger.info("Queue worker %s stopped after %d item(s).", self.owner, processed)
        return processed
