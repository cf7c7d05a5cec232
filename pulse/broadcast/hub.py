"""Operation-scoped progress broadcast.

The hub maps an opaque operation id to its current observer set and pushes
every accepted progress event to exactly that set. Any component owning an
operation id may publish through it: the executor reports connection test
runs, and external workers (e.g. a data migration) report their own progress.

Per operation id, publishes and subscriber mutations are serialized by a
dedicated lock, so one publisher's events reach every observer in the order
they were published. Different operation ids never share a lock.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from ..exceptions import NotFound, OperationClosed, ProgressRegression
from ..scheduling.models import Clock, RunStatus, ensure_utc, utc_now
from .models import ProgressEvent, ProgressSnapshot
from .transport import NullTransport, Transport


logger = logging.getLogger(__name__)


@dataclass
class OperationChannel:
    """Observers and latest snapshot of one operation."""

    operation_id: str
    observers: Set[str] = field(default_factory=set)
    snapshot: Optional[ProgressSnapshot] = None
    expires_at: Optional[datetime] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class HubStats:
    """Statistics for broadcast hub operations."""

    events_published: int = 0
    events_rejected: int = 0
    messages_delivered: int = 0
    delivery_failures: int = 0
    operations_purged: int = 0


class BroadcastHub:
    """Group-scoped delivery of operation progress."""

    def __init__(
        self,
        transport: Optional[Transport] = None,
        retention_seconds: float = 600,
        stale_seconds: float = 3600,
        recent_limit: int = 5,
        cleanup_interval_seconds: float = 60,
        clock: Optional[Clock] = None,
        closed_history_size: int = 10000
    ):
        """Initialize broadcast hub.

        Args:
            transport: Transport used to reach observers
            retention_seconds: How long a terminal snapshot survives once no
                observer is attached
            stale_seconds: How long an unobserved, non-terminal operation may
                go without events before it is dropped
            recent_limit: Number of recent errors and warnings kept per operation
            cleanup_interval_seconds: Interval of the background sweep
            clock: Callable returning the current UTC time
            closed_history_size: Number of purged terminal operations remembered
                so that they cannot be reopened by a late publish
        """
        self.transport = transport or NullTransport()
        self.retention_seconds = retention_seconds
        self.stale_seconds = stale_seconds
        self.recent_limit = recent_limit
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.clock = clock or utc_now
        self.closed_history_size = closed_history_size

        self.stats = HubStats()
        self._channels: Dict[str, OperationChannel] = {}
        # Terminal status of purged operations, oldest first
        self._closed: "OrderedDict[str, RunStatus]" = OrderedDict()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._shutdown = False

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _channel(self, operation_id: str) -> OperationChannel:
        channel = self._channels.get(operation_id)
        if channel is None:
            channel = OperationChannel(operation_id=operation_id)
            self._channels[operation_id] = channel
        return channel

    def _reattach(self, channel: OperationChannel) -> None:
        """Re-register a channel swept while a caller waited on its lock."""
        self._channels.setdefault(channel.operation_id, channel)

    def _start_retention(self, channel: OperationChannel, now: datetime) -> None:
        """Start the retention window of a terminal, unobserved operation."""
        if (
            channel.expires_at is None
            and not channel.observers
            and channel.snapshot is not None
            and channel.snapshot.is_terminal
        ):
            channel.expires_at = now + timedelta(seconds=self.retention_seconds)

    async def start(self) -> None:
        """Start the background sweep of expired operations."""
        if self._cleanup_task is None:
            self._shutdown = False
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Started broadcast hub")

    async def stop(self) -> None:
        """Stop the background sweep."""
        self._shutdown = True

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        logger.info("Stopped broadcast hub")

    async def join(self, operation_id: str, observer_id: str) -> Optional[ProgressSnapshot]:
        """Attach an observer to an operation. Idempotent.

        Returns:
            Current snapshot if one is available, so the caller can push it
            and not miss state published concurrently with the join
        """
        channel = self._channel(operation_id)
        async with channel.lock:
            self._reattach(channel)
            if observer_id not in channel.observers:
                channel.observers.add(observer_id)
                logger.debug(f"Observer {observer_id} joined operation {operation_id}")

            if channel.snapshot is None or channel.is_expired(self._now()):
                return None
            return channel.snapshot.model_copy(deep=True)

    async def leave(self, operation_id: str, observer_id: str) -> None:
        """Detach an observer from an operation. Idempotent."""
        channel = self._channels.get(operation_id)
        if channel is None:
            return

        async with channel.lock:
            if observer_id in channel.observers:
                channel.observers.discard(observer_id)
                logger.debug(f"Observer {observer_id} left operation {operation_id}")
            self._start_retention(channel, self._now())

    async def leave_all(self, observer_id: str) -> int:
        """Detach an observer from every operation, e.g. on disconnect.

        Returns:
            Number of operations the observer was attached to
        """
        joined = [
            operation_id for operation_id, channel in list(self._channels.items())
            if observer_id in channel.observers
        ]
        for operation_id in joined:
            await self.leave(operation_id, observer_id)
        return len(joined)

    def observers(self, operation_id: str) -> List[str]:
        """Current observers of an operation."""
        channel = self._channels.get(operation_id)
        return sorted(channel.observers) if channel else []

    async def publish(self, operation_id: str, event: ProgressEvent) -> ProgressSnapshot:
        """Apply an event to an operation's snapshot and fan it out.

        Delivery is best effort: a failed send to one observer is logged and
        does not affect the others.

        Raises:
            OperationClosed: If the operation already reached a terminal state
            ProgressRegression: If the event lowers the reported percentage
        """
        channel = self._channel(operation_id)

        async with channel.lock:
            self._reattach(channel)
            now = self._now()
            snapshot = self._apply(channel, event, now)
            channel.snapshot = snapshot
            self._start_retention(channel, now)
            self.stats.events_published += 1

            message = snapshot.to_message()
            for observer_id in list(channel.observers):
                try:
                    await self.transport.send(observer_id, message)
                    self.stats.messages_delivered += 1
                except Exception as e:
                    self.stats.delivery_failures += 1
                    logger.warning(
                        f"Failed to deliver progress for operation {operation_id} "
                        f"to observer {observer_id}: {e}"
                    )

        if snapshot.is_terminal:
            logger.info(f"Operation {operation_id} reached terminal state {snapshot.status.value}")
        return snapshot.model_copy(deep=True)

    def _apply(
        self,
        channel: OperationChannel,
        event: ProgressEvent,
        now: datetime
    ) -> ProgressSnapshot:
        """Build the next snapshot from the current one and an event."""
        operation_id = channel.operation_id
        current = channel.snapshot

        if current is not None and current.is_terminal:
            self.stats.events_rejected += 1
            raise OperationClosed(operation_id, current.status.value)
        if current is None and operation_id in self._closed:
            self.stats.events_rejected += 1
            raise OperationClosed(operation_id, self._closed[operation_id].value)

        previous = current.percentage if current is not None else 0.0
        percentage = event.resolved_percentage()
        if percentage is not None and percentage < previous:
            self.stats.events_rejected += 1
            raise ProgressRegression(operation_id, previous, percentage)

        if percentage is None:
            percentage = previous
        if event.status is RunStatus.SUCCEEDED:
            percentage = 100.0

        started_at = current.started_at if current is not None else now
        recent_errors = (current.recent_errors if current else []) + list(event.errors)
        recent_warnings = (current.recent_warnings if current else []) + list(event.warnings)

        if event.is_terminal:
            remaining = 0.0
        elif event.estimated_remaining_seconds is not None:
            remaining = event.estimated_remaining_seconds
        else:
            remaining = self._estimate_remaining(started_at, now, percentage)

        return ProgressSnapshot(
            operation_id=operation_id,
            status=event.status,
            sequence=(current.sequence if current else 0) + 1,
            percentage=percentage,
            processed=event.processed if event.processed is not None else (current.processed if current else None),
            total=event.total if event.total is not None else (current.total if current else None),
            current_step=event.current_step or (current.current_step if current else None),
            recent_errors=recent_errors[-self.recent_limit:] if self.recent_limit else [],
            recent_warnings=recent_warnings[-self.recent_limit:] if self.recent_limit else [],
            estimated_remaining_seconds=remaining,
            message=event.message if event.message is not None else (current.message if current else None),
            outcome=event.outcome,
            started_at=started_at,
            last_updated_at=now,
            completed_at=now if event.is_terminal else None,
        )

    @staticmethod
    def _estimate_remaining(started_at: datetime, now: datetime, percentage: float) -> Optional[float]:
        """Linear extrapolation of the remaining time from elapsed time."""
        if percentage <= 0.0 or percentage >= 100.0:
            return None
        elapsed = (now - started_at).total_seconds()
        return elapsed * (100.0 - percentage) / percentage

    async def current_state(self, operation_id: str) -> ProgressSnapshot:
        """Latest snapshot of an operation.

        Raises:
            NotFound: If nothing was published yet or the retained terminal
                snapshot has expired
        """
        channel = self._channels.get(operation_id)
        if channel is None:
            raise NotFound("Operation", operation_id)

        async with channel.lock:
            if channel.snapshot is None or channel.is_expired(self._now()):
                raise NotFound("Operation", operation_id)
            return channel.snapshot.model_copy(deep=True)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop expired terminal operations and abandoned unobserved ones.

        Returns:
            Number of operations removed
        """
        now = ensure_utc(now) if now is not None else self._now()
        stale_before = now - timedelta(seconds=self.stale_seconds)
        purged = 0

        for operation_id, channel in list(self._channels.items()):
            async with channel.lock:
                if channel.is_expired(now):
                    remove = True
                elif channel.observers:
                    remove = False
                elif channel.snapshot is None:
                    remove = True
                else:
                    remove = (
                        not channel.snapshot.is_terminal
                        and channel.snapshot.last_updated_at <= stale_before
                    )

                if remove and self._channels.get(operation_id) is channel:
                    del self._channels[operation_id]
                    if channel.snapshot is not None and channel.snapshot.is_terminal:
                        self._remember_closed(operation_id, channel.snapshot.status)
                    purged += 1

        if purged:
            self.stats.operations_purged += purged
            logger.info(f"Purged {purged} expired operations from broadcast hub")
        return purged

    def _remember_closed(self, operation_id: str, status: RunStatus) -> None:
        self._closed[operation_id] = status
        self._closed.move_to_end(operation_id)
        while len(self._closed) > self.closed_history_size:
            self._closed.popitem(last=False)

    def health(self) -> Dict[str, Any]:
        """Hub statistics for health reporting."""
        return {
            'operations': len(self._channels),
            'observers': sum(len(c.observers) for c in self._channels.values()),
            'events_published': self.stats.events_published,
            'events_rejected': self.stats.events_rejected,
            'delivery_failures': self.stats.delivery_failures,
            'cleanup_running': self._cleanup_task is not None and not self._cleanup_task.done(),
        }

    async def _cleanup_loop(self) -> None:
        """Background task for purging expired operations."""
        logger.info("Started broadcast cleanup task")

        while not self._shutdown:
            try:
                await self.purge_expired()
                await asyncio.sleep(self.cleanup_interval_seconds)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in broadcast cleanup task: {e}")
                await asyncio.sleep(self.cleanup_interval_seconds)

        logger.info("Broadcast cleanup task stopped")
