"""Indexing reconciliation.

Local status is updated optimistically when the user acts, then converged
with the remote job by per-batch polling loops and a periodic full resync.

Each status write bumps a revision; the latest write wins. A polling loop
only writes ids it still owns that are still awaiting a result, so a
superseding request or a de-index turns an older loop into a no-op for
those ids. A resync never touches protected statuses (a recent local
removal the remote side may not reflect yet).
"""
import asyncio
import logging
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel

from kb_picker.core.errors import MembershipUpdateFailed, StatusPollFailed
from kb_picker.core.events import EventType, IndexingEvent
from kb_picker.schemas.resources import (
    AWAITING_STATUSES,
    IndexStatus,
    is_protected,
    map_remote_status,
)
from kb_picker.services.resource_source import ResourceSource

logger = logging.getLogger(__name__)

EventEmitter = Callable[[IndexingEvent], Awaitable[None]]


class StatusRecord(BaseModel):
    status: IndexStatus
    revision: int


class IndexBatch(BaseModel):
    """Result of a submitted index request."""
    batch_id: int
    resource_ids: List[str]
    polled_ids: List[str]


def _unique(ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(ids))


class IndexingReconciler:
    """Per-resource indexing status for one job."""

    def __init__(
        self,
        source: ResourceSource,
        job_id: str,
        poll_interval: float = 10.0,
        max_attempts: int = 30,
        resync_interval: float = 30.0,
        emit: Optional[EventEmitter] = None,
    ):
        self.source = source
        self.job_id = job_id
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.resync_interval = resync_interval
        self.emit = emit
        self._records: Dict[str, StatusRecord] = {}
        self._owners: Dict[str, int] = {}
        self._revision = 0
        self._batch_seq = 0
        self._polls: Dict[int, asyncio.Task] = {}
        self._resync_task: Optional[asyncio.Task] = None
        # Membership is a read-modify-write of the whole list.
        self._membership_lock = asyncio.Lock()

    @property
    def statuses(self) -> Mapping[str, IndexStatus]:
        """Read-only snapshot of every known status."""
        return MappingProxyType({rid: rec.status for rid, rec in self._records.items()})

    def status_of(self, resource_id: str) -> IndexStatus:
        record = self._records.get(resource_id)
        return record.status if record else IndexStatus.UNINDEXED

    def record_of(self, resource_id: str) -> Optional[StatusRecord]:
        return self._records.get(resource_id)

    @property
    def is_running(self) -> bool:
        """True while the periodic resync timer is scheduled."""
        return self._resync_task is not None

    @property
    def active_batches(self) -> List[int]:
        return list(self._polls)

    def _set(self, resource_id: str, status: IndexStatus) -> None:
        self._revision += 1
        self._records[resource_id] = StatusRecord(status=status, revision=self._revision)

    def _awaiting(self, batch_id: int, ids: List[str]) -> List[str]:
        return [
            rid for rid in ids
            if self._owners.get(rid) == batch_id and self.status_of(rid) in AWAITING_STATUSES
        ]

    async def _emit(self, event_type: EventType, ids: List[str], message: str, **data) -> None:
        if self.emit is None:
            return
        try:
            await self.emit(IndexingEvent.create(event_type, self.job_id, ids, data, message))
        except Exception:
            logger.exception("Failed to deliver %s event", event_type.value)

    async def request_index(self, resource_ids: Iterable[str]) -> IndexBatch:
        """Add ids to the job in one batched call and start polling the new ones."""
        ids = _unique(resource_ids)
        self._batch_seq += 1
        batch_id = self._batch_seq
        polled = [
            rid for rid in ids
            if self.status_of(rid) not in (IndexStatus.INDEXED, IndexStatus.PENDING)
        ]
        for rid in polled:
            self._set(rid, IndexStatus.PENDING)
            self._owners[rid] = batch_id

        if not ids:
            return IndexBatch(batch_id=batch_id, resource_ids=[], polled_ids=[])

        try:
            async with self._membership_lock:
                current = await self.source.get_job_membership(self.job_id)
                await self.source.set_job_membership(self.job_id, _unique([*current, *ids]))
                await self.source.trigger_sync(self.job_id)
        except Exception as e:
            for rid in polled:
                self._set(rid, IndexStatus.ERROR)
            logger.error("Indexing %d resource(s) in %s failed: %s", len(ids), self.job_id, e)
            await self._emit(
                EventType.INDEX_FAILED, polled or ids,
                f"Failed to index {len(ids)} file(s)", error=str(e),
            )
            raise MembershipUpdateFailed(self.job_id, polled or ids, str(e)) from e

        logger.info("Submitted batch %d: %d resource(s) to %s", batch_id, len(ids), self.job_id)
        await self._emit(EventType.INDEX_SUBMITTED, ids, f"Processing {len(ids)} file(s)")
        if polled:
            task = asyncio.ensure_future(self._poll(batch_id, polled))
            self._polls[batch_id] = task
            task.add_done_callback(lambda t, bid=batch_id: self._polls.pop(bid, None))
        return IndexBatch(batch_id=batch_id, resource_ids=ids, polled_ids=polled)

    async def request_de_index(self, resource_ids: Iterable[str]) -> None:
        """Remove ids from the job. Callers pass only ids that are currently indexed."""
        ids = _unique(resource_ids)
        if not ids:
            return
        for rid in ids:
            self._owners.pop(rid, None)
            self._set(rid, IndexStatus.DE_INDEXING)

        try:
            async with self._membership_lock:
                current = await self.source.get_job_membership(self.job_id)
                removing = set(ids)
                remaining = [rid for rid in current if rid not in removing]
                await self.source.set_job_membership(self.job_id, remaining)
                await self.source.trigger_sync(self.job_id)
        except Exception as e:
            for rid in ids:
                self._set(rid, IndexStatus.ERROR)
            logger.error("De-indexing %d resource(s) from %s failed: %s", len(ids), self.job_id, e)
            await self._emit(
                EventType.DE_INDEX_FAILED, ids,
                f"Failed to remove {len(ids)} file(s) from the knowledge base", error=str(e),
            )
            raise MembershipUpdateFailed(self.job_id, ids, str(e)) from e

        for rid in ids:
            self._set(rid, IndexStatus.UNINDEXED)
        await self._emit(
            EventType.DE_INDEX_COMPLETED, ids, f"Removed {len(ids)} file(s) from the knowledge base"
        )

        try:
            await self.resync()
        except StatusPollFailed as e:
            logger.warning("Resync after de-index failed: %s", e)

    async def _fetch_statuses(self, ids: List[str]) -> Dict[str, str]:
        try:
            return await self.source.get_resource_statuses(self.job_id, ids)
        except Exception as e:
            raise StatusPollFailed(self.job_id, str(e)) from e

    async def _poll(self, batch_id: int, ids: List[str]) -> None:
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self.poll_interval)

            waiting = self._awaiting(batch_id, ids)
            if not waiting:
                break
            try:
                remote = await self._fetch_statuses(waiting)
            except StatusPollFailed as e:
                logger.warning(
                    "Poll %d/%d for batch %d failed: %s", attempt, self.max_attempts, batch_id, e
                )
                continue

            for rid in waiting:
                status = map_remote_status(remote.get(rid))
                # Not in the job yet: keep waiting.
                if status is None or status == IndexStatus.UNINDEXED:
                    continue
                if status != self.status_of(rid):
                    self._set(rid, status)

            if not self._awaiting(batch_id, ids):
                break
        else:
            timed_out = self._awaiting(batch_id, ids)
            for rid in timed_out:
                self._set(rid, IndexStatus.TIMEOUT)
            if timed_out:
                logger.warning(
                    "Batch %d timed out after %d attempts; %d resource(s) unresolved",
                    batch_id, self.max_attempts, len(timed_out),
                )
                await self._emit(
                    EventType.INDEX_TIMED_OUT, timed_out, "Indexing timed out",
                    attempts=self.max_attempts,
                )
                return

        owned = [rid for rid in ids if self._owners.get(rid) == batch_id]
        if not owned:
            return
        indexed = [rid for rid in owned if self.status_of(rid) == IndexStatus.INDEXED]
        failed = [rid for rid in owned if self.status_of(rid) == IndexStatus.ERROR]
        if failed:
            message = "Some files failed to index"
        else:
            message = f"{len(indexed)} file(s) indexed successfully"
        await self._emit(
            EventType.INDEX_COMPLETED, owned, message, indexed=len(indexed), failed=len(failed)
        )

    async def resync(self) -> List[str]:
        """Overwrite every non-protected status from the remote view.

        Remote members not yet known are registered as indexed. Returns the
        ids whose status changed.
        """
        try:
            members = await self.source.get_job_membership(self.job_id)
            candidates = _unique([*self._records, *members])
            annotations = await self.source.get_resource_statuses(self.job_id, candidates)
        except Exception as e:
            raise StatusPollFailed(self.job_id, str(e)) from e

        member_set = set(members)
        changed = []
        for rid in candidates:
            record = self._records.get(rid)
            if record is not None and is_protected(record.status):
                continue

            remote = map_remote_status(annotations.get(rid))
            awaiting = record is not None and record.status in AWAITING_STATUSES
            if awaiting and remote == IndexStatus.UNINDEXED:
                # Not in the job yet, as in polling.
                remote = None
            # Bare membership is not a result for an id a polling loop still waits on.
            if remote is None and rid in member_set and not awaiting:
                remote = IndexStatus.INDEXED
            if remote is None:
                # Dropped remotely: only an indexed id can be said to have left.
                if record is None or record.status != IndexStatus.INDEXED:
                    continue
                remote = IndexStatus.UNINDEXED

            if record is None or record.status != remote:
                self._set(rid, remote)
                changed.append(rid)

        if changed:
            logger.debug("Resync of %s changed %d status(es)", self.job_id, len(changed))
            await self._emit(
                EventType.STATUS_CHANGED, changed, "Indexing status updated",
                statuses={rid: self.status_of(rid).value for rid in changed},
            )
        return changed

    def start(self) -> None:
        """Start the periodic resync timer."""
        if self._resync_task is not None or self.resync_interval <= 0:
            return
        self._resync_task = asyncio.ensure_future(self._resync_loop())

    async def _resync_loop(self) -> None:
        while True:
            try:
                await self.resync()
            except StatusPollFailed as e:
                logger.warning("Periodic resync failed: %s", e)
            await asyncio.sleep(self.resync_interval)

    async def drain(self) -> None:
        """Wait for every running polling loop to finish."""
        while self._polls:
            await asyncio.gather(*list(self._polls.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel the resync timer and all polling loops."""
        tasks = list(self._polls.values())
        if self._resync_task is not None:
            tasks.append(self._resync_task)
            self._resync_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._polls.clear()
