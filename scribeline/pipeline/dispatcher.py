import asyncio
from dataclasses import dataclass

from sqlalchemy import select

from scribeline.models import MEETING_PROCESSING, Meeting, ProcessingJob
from scribeline.observability.logger import get_logger, job_context

log = get_logger("dispatcher")

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_FAILED = "failed"


@dataclass
class JobSpec:
    meeting_id: str
    attempt: int
    user_id: str
    provider: str
    method: str
    model: str | None = None
    transcript: str | None = None
    job_id: int | None = None


class JobDispatcher:
    """Runs processing jobs as supervised background tasks.

    Every job is written to the processing_jobs outbox before it starts, so
    work that was in flight when the process died can be found again.
    Callers get control back as soon as the task is scheduled.
    """

    def __init__(self, session_factory, handler=None, recover_orphans: bool = False):
        self.session_factory = session_factory
        self.handler = handler
        self.recover_orphans = recover_orphans
        self._tasks: set[asyncio.Task] = set()

    def set_handler(self, handler):
        self.handler = handler

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def enqueue(self, spec: JobSpec) -> int:
        if self.handler is None:
            raise RuntimeError("JobDispatcher has no handler")
        async with self.session_factory() as session:
            job = ProcessingJob(
                meeting_id=spec.meeting_id,
                attempt=spec.attempt,
                user_id=spec.user_id,
                provider=spec.provider,
                model=spec.model,
                method=spec.method,
                transcript=spec.transcript,
                status=JOB_QUEUED,
            )
            session.add(job)
            await session.commit()
            spec.job_id = job.id

        self._start(spec)
        log.info("job_enqueued", job_id=spec.job_id, meeting_id=spec.meeting_id,
                 attempt=spec.attempt, provider=spec.provider, method=spec.method)
        return spec.job_id

    def _start(self, spec: JobSpec):
        task = asyncio.create_task(self._run(spec), name=f"job-{spec.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, spec: JobSpec):
        with job_context(job_id=spec.job_id, meeting_id=spec.meeting_id, attempt=spec.attempt):
            await self._mark(spec.job_id, JOB_RUNNING)
            try:
                await self.handler(spec)
            except asyncio.CancelledError:
                log.warning("job_cancelled")
                raise
            except Exception as e:
                log.error("job_crashed", error=str(e))
                await self._mark(spec.job_id, JOB_FAILED, error=str(e))
                return
            await self._mark(spec.job_id, JOB_DONE)

    async def _mark(self, job_id: int, status: str, error: str = None):
        try:
            async with self.session_factory() as session:
                job = await session.get(ProcessingJob, job_id)
                if job is None:
                    return
                job.status = status
                if error:
                    job.error = error[:1000]
                await session.commit()
        except Exception as e:
            log.error("job_status_write_failed", job_id=job_id, status=status, error=str(e))

    async def drain(self, timeout: float = 30.0) -> bool:
        """Wait for in-flight jobs; returns False if some were still running at the timeout."""
        if not self._tasks:
            return True
        pending = set(self._tasks)
        log.info("dispatcher_draining", in_flight=len(pending))
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            log.warning("dispatcher_drain_timeout", still_running=len(still_pending))
            return False
        return True

    async def recover(self) -> int:
        """Re-dispatch outbox jobs whose meeting is still processing on the same attempt.

        Only runs when orphan recovery is enabled; otherwise orphaned meetings
        stay in processing until the user reprocesses them.
        """
        if not self.recover_orphans:
            return 0

        async with self.session_factory() as session:
            result = await session.execute(
                select(ProcessingJob, Meeting)
                .join(Meeting, Meeting.id == ProcessingJob.meeting_id)
                .where(
                    ProcessingJob.status.in_([JOB_QUEUED, JOB_RUNNING]),
                    Meeting.status == MEETING_PROCESSING,
                    Meeting.attempt == ProcessingJob.attempt,
                )
            )
            rows = result.all()

        for job, _meeting in rows:
            spec = JobSpec(
                meeting_id=job.meeting_id,
                attempt=job.attempt,
                user_id=job.user_id,
                provider=job.provider,
                method=job.method,
                model=job.model,
                transcript=job.transcript,
                job_id=job.id,
            )
            self._start(spec)
            log.info("job_recovered", job_id=job.id, meeting_id=job.meeting_id, attempt=job.attempt)
        return len(rows)
