import asyncio

import pytest
from sqlalchemy import select

from scribeline.models import Meeting, ProcessingJob
from scribeline.pipeline.dispatcher import JOB_DONE, JOB_FAILED, JOB_QUEUED, JobDispatcher, JobSpec


def _spec(meeting_id="m1", attempt=1):
    return JobSpec(meeting_id=meeting_id, attempt=attempt, user_id="u1", provider="gemini", method="server")


async def _jobs(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(ProcessingJob).order_by(ProcessingJob.id))).scalars().all()


@pytest.mark.asyncio
class TestJobDispatcher:
    async def test_enqueue_runs_handler_and_marks_done(self, session_factory):
        seen = []

        async def handler(spec):
            seen.append(spec.meeting_id)

        dispatcher = JobDispatcher(session_factory, handler=handler)
        job_id = await dispatcher.enqueue(_spec())
        assert await dispatcher.drain(timeout=5) is True

        assert seen == ["m1"]
        jobs = await _jobs(session_factory)
        assert jobs[0].id == job_id
        assert jobs[0].status == JOB_DONE

    async def test_enqueue_returns_before_handler_finishes(self, session_factory):
        release = asyncio.Event()

        async def handler(spec):
            await release.wait()

        dispatcher = JobDispatcher(session_factory, handler=handler)
        await dispatcher.enqueue(_spec())
        assert dispatcher.in_flight == 1

        release.set()
        await dispatcher.drain(timeout=5)
        assert dispatcher.in_flight == 0

    async def test_handler_crash_is_recorded(self, session_factory):
        async def handler(spec):
            raise RuntimeError("worker exploded")

        dispatcher = JobDispatcher(session_factory, handler=handler)
        await dispatcher.enqueue(_spec())
        await dispatcher.drain(timeout=5)

        jobs = await _jobs(session_factory)
        assert jobs[0].status == JOB_FAILED
        assert jobs[0].error == "worker exploded"

    async def test_drain_timeout(self, session_factory):
        release = asyncio.Event()

        async def handler(spec):
            await release.wait()

        dispatcher = JobDispatcher(session_factory, handler=handler)
        await dispatcher.enqueue(_spec())

        assert await dispatcher.drain(timeout=0.01) is False
        release.set()
        assert await dispatcher.drain(timeout=5) is True

    async def test_enqueue_without_handler(self, session_factory):
        with pytest.raises(RuntimeError):
            await JobDispatcher(session_factory).enqueue(_spec())

    async def test_recover_disabled_by_default(self, session_factory):
        async with session_factory() as session:
            session.add(Meeting(id="m1", user_id="u1", status="processing", attempt=1))
            session.add(ProcessingJob(meeting_id="m1", attempt=1, user_id="u1", provider="gemini",
                                      method="server", status=JOB_QUEUED))
            await session.commit()

        dispatcher = JobDispatcher(session_factory, handler=lambda spec: None)
        assert await dispatcher.recover() == 0
        assert dispatcher.in_flight == 0

    async def test_recover_only_current_attempts(self, session_factory):
        async with session_factory() as session:
            session.add(Meeting(id="m1", user_id="u1", status="processing", attempt=2))
            session.add(Meeting(id="m2", user_id="u1", status="completed", attempt=1))
            # Superseded attempt, current attempt, finished meeting
            session.add(ProcessingJob(meeting_id="m1", attempt=1, user_id="u1", provider="gemini",
                                      method="server", status="running"))
            session.add(ProcessingJob(meeting_id="m1", attempt=2, user_id="u1", provider="gemini",
                                      method="server", status=JOB_QUEUED))
            session.add(ProcessingJob(meeting_id="m2", attempt=1, user_id="u1", provider="gemini",
                                      method="server", status="running"))
            await session.commit()

        seen = []

        async def handler(spec):
            seen.append((spec.meeting_id, spec.attempt))

        dispatcher = JobDispatcher(session_factory, handler=handler, recover_orphans=True)
        assert await dispatcher.recover() == 1
        await dispatcher.drain(timeout=5)

        assert seen == [("m1", 2)]
