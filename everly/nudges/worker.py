from dataclasses import dataclass, asdict

from everly.logging_config import get_logger, WorkerContext
from everly.models import db
from everly.nudges.providers import NudgeProvider, OutboundNudge, SendResult
from everly.nudges.queue import NudgeQueueStore

logger = get_logger(__name__)


@dataclass
class WorkerResult:
    taken: int = 0
    sent: int = 0
    failed: int = 0
    requeued: int = 0

    def to_dict(self):
        return asdict(self)


class NudgeWorker:
    """
    One pull of the nudge queue: lease a bounded batch, deliver each job and
    record the outcome. Invoked by an external trigger (HTTP worker endpoint
    or the optional scheduler job); it never reschedules itself.
    """

    def __init__(self, store: NudgeQueueStore, provider: NudgeProvider, batch_size: int = 20):
        self.store = store
        self.provider = provider
        self.batch_size = batch_size

    def deliver(self, job) -> SendResult:
        payload = job.payload or {}
        nudge = OutboundNudge(
            hub_id=job.hub_id,
            member_id=job.member_id,
            channel=payload.get("channel") or job.channel or "stub",
            message=payload.get("message", ""),
            variables=payload.get("variables"),
        )
        try:
            return self.provider.send(nudge)
        except Exception as e:
            logger.error("Nudge provider raised", job_id=job.id, exc_info=True)
            return SendResult.failure(e)

    def run_once(self, max_retries: int) -> WorkerResult:
        """
        Process a single batch.

        Every job's outcome is isolated: an exception while handling one job
        is recorded as a failed attempt for that job and the batch continues.
        """
        with WorkerContext(batch_size=self.batch_size) as ctx:
            batch = self.store.dequeue(self.batch_size, ctx.worker_id)
            result = WorkerResult(taken=len(batch))

            for job in batch:
                self._process(job, max_retries, result)

            logger.info("Nudge worker batch finished", worker_id=ctx.worker_id, **result.to_dict())
        return result

    def _process(self, job, max_retries, result):
        job_id = job.id
        attempt = job.attempt
        log_id = None

        try:
            log = self.store.log_for_job(job_id)
            log_id = log.id if log is not None else None
            outcome = self.deliver(job)
            if outcome.ok:
                self.store.mark_success(job_id, log_id)
                result.sent += 1
                return
            error = outcome.error or "unknown error"
        except Exception as e:
            db.session.rollback()
            logger.error(f"Error processing nudge job {job_id}", job_id=job_id, exc_info=True)
            error = f"{type(e).__name__}: {e}"

        try:
            terminal = self.store.mark_failure(job_id, log_id, error, max_retries, attempt)
        except Exception:
            # The lease stays set and expires, so the job is offered again later
            logger.error(f"Could not record failure for nudge job {job_id}", job_id=job_id, exc_info=True)
            result.requeued += 1
            return

        if terminal:
            result.failed += 1
        else:
            result.requeued += 1
