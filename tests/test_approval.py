"""
Tests for the approval gate on its own
"""

import asyncio

import pytest

from jobengine.approval import ApprovalGate
from jobengine.broadcaster import OutputBroadcaster
from jobengine.errors import AlreadyResponded, NotAwaitingApproval
from jobengine.models import JobStatus
from jobengine.store import JobStore


def running_job(store):
    job = store.create("deploy", "stackA")
    store.update(job.id, status=JobStatus.RUNNING, lines=["+ resourceX"])
    return job


class TestApprovalGate:

    def setup_method(self):
        self.store = JobStore(OutputBroadcaster())
        self.gate = ApprovalGate(self.store)

    @pytest.mark.asyncio
    async def test_checkpoint_parks_job(self):
        job = running_job(self.store)
        waiter = asyncio.create_task(self.gate.checkpoint(job.id, ["+ resourceX"]))
        await asyncio.sleep(0)

        parked = self.store.get(job.id)
        assert parked.status == JobStatus.AWAITING_APPROVAL
        assert parked.diff_output == ["+ resourceX"]
        assert self.gate.is_waiting(job.id)

        self.gate.respond(job.id, True)
        assert await waiter is True
        assert self.store.get(job.id).status == JobStatus.RUNNING
        assert not self.gate.is_waiting(job.id)

    @pytest.mark.asyncio
    async def test_rejection_cancels(self):
        job = running_job(self.store)
        waiter = asyncio.create_task(self.gate.checkpoint(job.id, ["+ resourceX"]))
        await asyncio.sleep(0)

        result = self.gate.respond(job.id, False)
        assert result.status == JobStatus.CANCELLED
        assert result.error == "Deploy rejected by user"
        assert await waiter is False

    @pytest.mark.asyncio
    async def test_exactly_once(self):
        job = running_job(self.store)
        waiter = asyncio.create_task(self.gate.checkpoint(job.id, ["+ resourceX"]))
        await asyncio.sleep(0)

        self.gate.respond(job.id, True)
        with pytest.raises(AlreadyResponded):
            self.gate.respond(job.id, False)
        await waiter
        with pytest.raises(AlreadyResponded):
            self.gate.respond(job.id, False)
        assert self.store.get(job.id).status == JobStatus.RUNNING

    def test_not_awaiting(self):
        job = running_job(self.store)
        with pytest.raises(NotAwaitingApproval):
            self.gate.respond(job.id, True)
        assert self.store.get(job.id).status == JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_abort_releases_without_deciding(self):
        job = running_job(self.store)
        waiter = asyncio.create_task(self.gate.checkpoint(job.id, ["+ resourceX"]))
        await asyncio.sleep(0)

        assert self.gate.abort(job.id) is True
        assert await waiter is False
        assert self.store.get(job.id).status == JobStatus.AWAITING_APPROVAL
        assert self.gate.abort(job.id) is False

    @pytest.mark.asyncio
    async def test_timeout_auto_rejects(self):
        gate = ApprovalGate(self.store, timeout=0.05)
        job = running_job(self.store)
        assert await gate.checkpoint(job.id, ["+ resourceX"]) is False
        settled = self.store.get(job.id)
        assert settled.status == JobStatus.CANCELLED
        assert settled.error == "Approval timed out"
