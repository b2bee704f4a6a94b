"""Tests for indexing reconciliation: optimistic updates, polling and resync."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from kb_picker.core.errors import MembershipUpdateFailed, StatusPollFailed
from kb_picker.core.events import EventType
from kb_picker.schemas.resources import IndexStatus
from kb_picker.services.reconciler import IndexingReconciler

from conftest import FakeSource, settle


JOB = "kb-1"


def make_reconciler(source, **kwargs):
    options = {"poll_interval": 0, "max_attempts": 5, "resync_interval": 0}
    options.update(kwargs)
    return IndexingReconciler(source, JOB, **options)


def event_types(emit: AsyncMock):
    return [call.args[0].type for call in emit.await_args_list]


class TestRequestIndex:

    @pytest.mark.asyncio
    async def test_single_batched_call_with_union(self):
        source = FakeSource()
        source.members[JOB] = ["existing"]
        reconciler = make_reconciler(source)

        batch = await reconciler.request_index(["a", "b"])

        assert source.set_calls == [["existing", "a", "b"]]
        assert source.sync_calls == [JOB]
        assert batch.polled_ids == ["a", "b"]
        await reconciler.drain()
        assert reconciler.status_of("a") == IndexStatus.INDEXED
        assert reconciler.status_of("b") == IndexStatus.INDEXED

    @pytest.mark.asyncio
    async def test_ids_move_to_pending_before_the_call_returns(self):
        source = FakeSource()
        source.set_gate = asyncio.Event()
        reconciler = make_reconciler(source)

        task = asyncio.ensure_future(reconciler.request_index(["a"]))
        await settle()
        assert reconciler.status_of("a") == IndexStatus.PENDING
        source.set_gate.set()
        await task
        await reconciler.drain()

    @pytest.mark.asyncio
    async def test_indexing_twice_gives_same_membership(self):
        source = FakeSource()
        reconciler = make_reconciler(source)

        await reconciler.request_index(["a", "b"])
        await reconciler.drain()
        once = list(source.members[JOB])
        second = await reconciler.request_index(["a", "b"])
        await reconciler.drain()

        assert source.members[JOB] == once
        assert second.polled_ids == []

    @pytest.mark.asyncio
    async def test_failure_marks_batch_as_error_and_does_not_poll(self):
        source = FakeSource()
        source.fail_membership = True
        emit = AsyncMock()
        reconciler = make_reconciler(source, emit=emit)

        with pytest.raises(MembershipUpdateFailed) as exc_info:
            await reconciler.request_index(["a", "b"])

        assert exc_info.value.resource_ids == ["a", "b"]
        assert reconciler.status_of("a") == IndexStatus.ERROR
        assert reconciler.status_of("b") == IndexStatus.ERROR
        assert reconciler.active_batches == []
        assert source.status_calls == 0
        assert event_types(emit) == [EventType.INDEX_FAILED]

    @pytest.mark.asyncio
    async def test_bulk_index_then_timeout(self):
        source = FakeSource()
        source.status_script = lambda attempt, ids: {"a": "indexed"} if attempt >= 3 else {}
        emit = AsyncMock()
        reconciler = make_reconciler(source, max_attempts=6, emit=emit)

        await reconciler.request_index(["a", "b"])
        await reconciler.drain()

        assert dict(reconciler.statuses) == {"a": IndexStatus.INDEXED, "b": IndexStatus.TIMEOUT}
        assert source.status_calls == 6
        assert event_types(emit) == [EventType.INDEX_SUBMITTED, EventType.INDEX_TIMED_OUT]
        assert emit.await_args_list[-1].args[0].resource_ids == ["b"]

    @pytest.mark.asyncio
    async def test_processing_then_failed(self):
        source = FakeSource()
        source.status_script = lambda attempt, ids: (
            {"a": "processing"} if attempt == 1 else {"a": "failed"}
        )
        emit = AsyncMock()
        reconciler = make_reconciler(source, emit=emit)

        await reconciler.request_index(["a"])
        await reconciler.drain()

        assert reconciler.status_of("a") == IndexStatus.ERROR
        completed = emit.await_args_list[-1].args[0]
        assert completed.type == EventType.INDEX_COMPLETED
        assert completed.data == {"indexed": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_poll_failures_are_retried(self):
        source = FakeSource()
        source.status_failures = 2
        reconciler = make_reconciler(source)

        await reconciler.request_index(["a"])
        await reconciler.drain()

        assert reconciler.status_of("a") == IndexStatus.INDEXED
        assert source.status_calls == 3

    @pytest.mark.asyncio
    async def test_poll_failures_exhaust_budget_into_timeout(self):
        source = FakeSource()
        source.status_failures = 100
        reconciler = make_reconciler(source, max_attempts=3)

        await reconciler.request_index(["a"])
        await reconciler.drain()

        assert reconciler.status_of("a") == IndexStatus.TIMEOUT
        assert source.status_calls == 3

    @pytest.mark.asyncio
    async def test_superseded_ids_are_left_alone_by_older_loop(self):
        source = FakeSource()
        source.status_script = lambda attempt, ids: {}
        reconciler = make_reconciler(source, max_attempts=4)

        await reconciler.request_index(["a", "b"])
        await reconciler.request_de_index(["a"])
        await reconciler.drain()

        assert reconciler.status_of("a") == IndexStatus.UNINDEXED
        assert reconciler.status_of("b") == IndexStatus.TIMEOUT


class TestRequestDeIndex:

    @pytest.mark.asyncio
    async def test_removes_ids_and_marks_unindexed(self):
        source = FakeSource()
        source.members[JOB] = ["a", "b", "c"]
        emit = AsyncMock()
        reconciler = make_reconciler(source, emit=emit)
        await reconciler.resync()

        await reconciler.request_de_index(["a", "c"])

        assert source.members[JOB] == ["b"]
        assert source.sync_calls == [JOB]
        assert reconciler.status_of("a") == IndexStatus.UNINDEXED
        assert reconciler.status_of("c") == IndexStatus.UNINDEXED
        assert reconciler.status_of("b") == IndexStatus.INDEXED
        assert EventType.DE_INDEX_COMPLETED in event_types(emit)

    @pytest.mark.asyncio
    async def test_failure_marks_error(self):
        source = FakeSource()
        source.members[JOB] = ["a"]
        reconciler = make_reconciler(source)
        await reconciler.resync()
        source.fail_membership = True

        with pytest.raises(MembershipUpdateFailed):
            await reconciler.request_de_index(["a"])
        assert reconciler.status_of("a") == IndexStatus.ERROR

    @pytest.mark.asyncio
    async def test_resync_does_not_clobber_de_indexing(self):
        source = FakeSource()
        source.members[JOB] = ["a"]
        reconciler = make_reconciler(source)
        await reconciler.resync()
        assert reconciler.status_of("a") == IndexStatus.INDEXED

        source.set_gate = asyncio.Event()
        task = asyncio.ensure_future(reconciler.request_de_index(["a"]))
        await settle()
        assert reconciler.status_of("a") == IndexStatus.DE_INDEXING

        # Remote still lists "a" as a member
        await reconciler.resync()
        assert reconciler.status_of("a") == IndexStatus.DE_INDEXING

        source.set_gate.set()
        await task
        assert reconciler.status_of("a") == IndexStatus.UNINDEXED


class TestResync:

    @pytest.mark.asyncio
    async def test_registers_remote_members(self):
        source = FakeSource()
        source.members[JOB] = ["a", "b"]
        reconciler = make_reconciler(source)

        changed = await reconciler.resync()

        assert changed == ["a", "b"]
        assert dict(reconciler.statuses) == {"a": IndexStatus.INDEXED, "b": IndexStatus.INDEXED}

    @pytest.mark.asyncio
    async def test_remote_annotations_win_over_membership(self):
        source = FakeSource()
        source.members[JOB] = ["a"]
        source.status_script = lambda attempt, ids: {"a": "processing"}
        reconciler = make_reconciler(source)

        await reconciler.resync()
        assert reconciler.status_of("a") == IndexStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_indexed_id_dropped_remotely_becomes_unindexed(self):
        source = FakeSource()
        source.members[JOB] = ["a"]
        reconciler = make_reconciler(source)
        await reconciler.resync()

        source.members[JOB] = []
        await reconciler.resync()
        assert reconciler.status_of("a") == IndexStatus.UNINDEXED

    @pytest.mark.asyncio
    async def test_error_status_is_kept_when_remote_knows_nothing(self):
        source = FakeSource()
        source.fail_membership = True
        reconciler = make_reconciler(source)
        with pytest.raises(MembershipUpdateFailed):
            await reconciler.request_index(["a"])

        source.fail_membership = False
        await reconciler.resync()
        assert reconciler.status_of("a") == IndexStatus.ERROR

    @pytest.mark.asyncio
    async def test_unindexed_is_protected(self):
        source = FakeSource()
        source.members[JOB] = ["a"]
        reconciler = make_reconciler(source)
        await reconciler.resync()
        reconciler._set("a", IndexStatus.UNINDEXED)

        await reconciler.resync()
        assert reconciler.status_of("a") == IndexStatus.UNINDEXED

    @pytest.mark.asyncio
    async def test_resync_failure_raises_poll_failed(self):
        source = FakeSource()
        source.fail_membership = True
        reconciler = make_reconciler(source)
        with pytest.raises(StatusPollFailed):
            await reconciler.resync()

    @pytest.mark.asyncio
    async def test_periodic_resync_timer(self):
        source = FakeSource()
        source.members[JOB] = ["a"]
        reconciler = make_reconciler(source, resync_interval=0.01)

        reconciler.start()
        await asyncio.sleep(0.05)
        await reconciler.stop()

        assert reconciler.status_of("a") == IndexStatus.INDEXED
        assert source.status_calls >= 2

    @pytest.mark.asyncio
    async def test_status_revisions_increase(self):
        source = FakeSource()
        reconciler = make_reconciler(source)
        await reconciler.request_index(["a"])
        pending_revision = reconciler.record_of("a").revision
        await reconciler.drain()
        assert reconciler.record_of("a").revision > pending_revision


class TestMembershipConcurrency:

    @pytest.mark.asyncio
    async def test_overlapping_index_requests_keep_both_batches(self):
        source = FakeSource()
        source.slow_reads = True
        reconciler = make_reconciler(source)

        await asyncio.gather(reconciler.request_index(["a"]), reconciler.request_index(["b"]))
        await reconciler.drain()

        assert source.members[JOB] == ["a", "b"]
        assert dict(reconciler.statuses) == {"a": IndexStatus.INDEXED, "b": IndexStatus.INDEXED}

    @pytest.mark.asyncio
    async def test_overlapping_index_and_de_index(self):
        source = FakeSource()
        source.members[JOB] = ["a"]
        reconciler = make_reconciler(source)
        await reconciler.resync()
        source.slow_reads = True

        await asyncio.gather(reconciler.request_de_index(["a"]), reconciler.request_index(["b"]))
        await reconciler.drain()

        assert source.members[JOB] == ["b"]
        assert reconciler.status_of("a") == IndexStatus.UNINDEXED
        assert reconciler.status_of("b") == IndexStatus.INDEXED

    @pytest.mark.asyncio
    async def test_resync_ignores_not_in_job_marker_for_awaiting_ids(self):
        source = FakeSource()
        source.status_script = lambda attempt, ids: {rid: "resource" for rid in ids}
        reconciler = make_reconciler(source, poll_interval=60)

        await reconciler.request_index(["a"])
        await settle()
        await reconciler.resync()

        assert reconciler.status_of("a") == IndexStatus.PENDING
        await reconciler.stop()
