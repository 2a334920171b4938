"""
Durable nudge queue backed by the nudge_queue / nudge_logs tables.

NudgeQueueStore is the only code that mutates attempt, lock and status
fields on a NudgeJob. Leases are claimed with a conditional UPDATE so two
workers can never both claim the same row, and a lease older than
lease_timeout_seconds is treated as abandoned.
"""
from dataclasses import dataclass, field, asdict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from everly.datetime_utils import utcnow
from everly.logging_config import get_logger
from everly.models import db, is_unique_violation, NudgeJob, NudgeLog, NudgeStatus

logger = get_logger(__name__)

MESSAGE_PREVIEW_LENGTH = 280
ERROR_MAX_LENGTH = 2000


@dataclass
class NewNudgeJob:
    hub_id: str
    member_id: str
    recipe_name: str
    message: str
    dedupe_key: str
    channel: str = "stub"
    variables: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    message_hash: Optional[str] = None


@dataclass
class EnqueueResult:
    enqueued: bool
    reason: Optional[str] = None  # 'duplicate' | 'rate_limited'
    queue_id: Optional[int] = None
    log_id: Optional[int] = None

    def to_dict(self):
        return {k: v for k, v in asdict(self).items() if v is not None}


class NudgeQueueStore:
    """Enqueue / lease / complete operations over the nudge queue."""

    def __init__(self, lease_timeout_seconds=300, retry_base_seconds=60, rate_limit_window_hours=0):
        self.lease_timeout_seconds = lease_timeout_seconds
        self.retry_base_seconds = retry_base_seconds
        self.rate_limit_window_hours = rate_limit_window_hours

    @classmethod
    def from_config(cls, config):
        return cls(
            lease_timeout_seconds=config.get("NUDGE_LEASE_TIMEOUT_SECONDS", 300),
            retry_base_seconds=config.get("NUDGE_RETRY_BASE_SECONDS", 60),
            rate_limit_window_hours=config.get("NUDGE_RATE_LIMIT_WINDOW_HOURS", 0),
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _commit(self, operation, **context):
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.error(f"Nudge queue {operation} failed", operation=operation, exc_info=True, **context)
            raise

    def backoff_delay(self, attempt):
        """Delay before retry number attempt+1: base * 2**attempt (60s, 120s, 240s, ...)."""
        return timedelta(seconds=self.retry_base_seconds * (2 ** attempt))

    def _eligible(self, now):
        lease_cutoff = now - timedelta(seconds=self.lease_timeout_seconds)
        return and_(
            NudgeJob.status == NudgeStatus.QUEUED.value,
            NudgeJob.available_at <= now,
            or_(NudgeJob.locked_at.is_(None), NudgeJob.locked_at < lease_cutoff),
        )

    def _candidate_ids(self, eligible, limit) -> List[int]:
        """Oldest-available eligible ids; the claim itself happens afterwards."""
        query = (
            db.session.query(NudgeJob.id)
            .filter(eligible)
            .order_by(NudgeJob.available_at.asc(), NudgeJob.id.asc())
            .limit(limit)
        )
        if db.engine.dialect.name == "postgresql":
            query = query.with_for_update(skip_locked=True)
        return [row.id for row in query.all()]

    def _is_rate_limited(self, hub_id, member_id, now):
        if not self.rate_limit_window_hours:
            return False
        since = now - timedelta(hours=self.rate_limit_window_hours)
        recent = NudgeLog.query.filter(
            NudgeLog.hub_id == hub_id,
            NudgeLog.member_id == member_id,
            NudgeLog.scheduled_at >= since,
            NudgeLog.status.in_([NudgeStatus.QUEUED.value, NudgeStatus.SENT.value]),
        ).first()
        return recent is not None

    def _resolve_log(self, job, log_id):
        if log_id is not None:
            return db.session.get(NudgeLog, log_id)
        return self.log_for_job(job.id)

    # ------------------------------------------------------------------
    # enqueue
    # ------------------------------------------------------------------

    def _record_skip(self, new_job, reason, now, existing_job_id=None) -> EnqueueResult:
        """Write a skipped audit row. It has no job_id, so job lineages stay untouched."""
        log = NudgeLog(
            job_id=None,
            hub_id=new_job.hub_id,
            recipe_name=new_job.recipe_name,
            member_id=new_job.member_id,
            channel=new_job.channel,
            message_preview=new_job.message[:MESSAGE_PREVIEW_LENGTH],
            message_hash=new_job.message_hash,
            status=NudgeStatus.SKIPPED.value,
            attempts=0,
            error=reason,
            scheduled_at=now,
            created_at=now,
            updated_at=now,
        )
        db.session.add(log)
        self._commit("record_skip", hub_id=new_job.hub_id, reason=reason)
        return EnqueueResult(enqueued=False, reason=reason, queue_id=existing_job_id, log_id=log.id)

    def enqueue(self, new_job: NewNudgeJob) -> EnqueueResult:
        """
        Insert a job and its queued log row.

        A dedupe-key collision with a queued/sent job is reported as
        'duplicate' instead of raising. A job that previously failed
        terminally is re-armed as a new attempt lineage. Duplicate and
        rate-limited requests leave a skipped log row whose error holds
        the reason.
        """
        now = utcnow()
        existing = NudgeJob.query.filter_by(dedupe_key=new_job.dedupe_key).first()
        if existing is not None and existing.status != NudgeStatus.FAILED.value:
            logger.info(
                "Nudge skipped as duplicate",
                hub_id=new_job.hub_id,
                member_id=new_job.member_id,
                recipe_name=new_job.recipe_name,
                existing_job_id=existing.id
            )
            return self._record_skip(new_job, "duplicate", now, existing_job_id=existing.id)

        if self._is_rate_limited(new_job.hub_id, new_job.member_id, now):
            logger.info(
                "Nudge skipped by member rate limit",
                hub_id=new_job.hub_id,
                member_id=new_job.member_id,
                recipe_name=new_job.recipe_name,
                window_hours=self.rate_limit_window_hours
            )
            return self._record_skip(new_job, "rate_limited", now)

        payload = {
            "message": new_job.message,
            "variables": new_job.variables,
            "channel": new_job.channel,
            "metadata": new_job.metadata or {},
        }

        try:
            if existing is not None:
                rearmed = db.session.execute(
                    update(NudgeJob)
                    .where(NudgeJob.id == existing.id, NudgeJob.status == NudgeStatus.FAILED.value)
                    .values(
                        status=NudgeStatus.QUEUED.value,
                        payload=payload,
                        channel=new_job.channel,
                        attempt=0,
                        available_at=now,
                        locked_at=None,
                        locked_by=None,
                        last_error=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if rearmed != 1:
                    db.session.rollback()
                    return self._record_skip(new_job, "duplicate", now, existing_job_id=existing.id)
                job_id = existing.id
            else:
                job = NudgeJob(
                    hub_id=new_job.hub_id,
                    member_id=new_job.member_id,
                    recipe_name=new_job.recipe_name,
                    channel=new_job.channel,
                    payload=payload,
                    status=NudgeStatus.QUEUED.value,
                    attempt=0,
                    available_at=now,
                    dedupe_key=new_job.dedupe_key,
                    created_at=now,
                    updated_at=now,
                )
                db.session.add(job)
                db.session.flush()
                job_id = job.id

            log = NudgeLog(
                job_id=job_id,
                hub_id=new_job.hub_id,
                recipe_name=new_job.recipe_name,
                member_id=new_job.member_id,
                channel=new_job.channel,
                message_preview=new_job.message[:MESSAGE_PREVIEW_LENGTH],
                message_hash=new_job.message_hash,
                status=NudgeStatus.QUEUED.value,
                attempts=0,
                scheduled_at=now,
                created_at=now,
                updated_at=now,
            )
            db.session.add(log)
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            if is_unique_violation(e):
                # Lost the race against a concurrent enqueue of the same key
                logger.info("Nudge skipped as duplicate (concurrent enqueue)", hub_id=new_job.hub_id,
                            member_id=new_job.member_id, recipe_name=new_job.recipe_name)
                return self._record_skip(new_job, "duplicate", now)
            logger.error("Nudge enqueue failed", hub_id=new_job.hub_id, exc_info=True)
            raise
        except SQLAlchemyError:
            db.session.rollback()
            logger.error("Nudge enqueue failed", hub_id=new_job.hub_id, exc_info=True)
            raise

        logger.info(
            "Nudge enqueued",
            job_id=job_id,
            log_id=log.id,
            hub_id=new_job.hub_id,
            member_id=new_job.member_id,
            recipe_name=new_job.recipe_name,
            rearmed=existing is not None
        )
        return EnqueueResult(enqueued=True, queue_id=job_id, log_id=log.id)

    # ------------------------------------------------------------------
    # dequeue
    # ------------------------------------------------------------------

    def dequeue(self, limit: int, worker_id: str) -> List[NudgeJob]:
        """
        Lease up to limit eligible jobs for worker_id.

        Candidates are read oldest-available first, then each one is claimed
        with UPDATE ... WHERE <still eligible>. A row another worker claimed
        in between matches zero rows and is skipped.
        """
        if limit <= 0:
            return []

        now = utcnow()
        eligible = self._eligible(now)

        try:
            candidate_ids = self._candidate_ids(eligible, limit)
            claimed_ids = []
            for job_id in candidate_ids:
                result = db.session.execute(
                    update(NudgeJob)
                    .where(NudgeJob.id == job_id, eligible)
                    .values(locked_at=now, locked_by=worker_id, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)
        except SQLAlchemyError:
            db.session.rollback()
            logger.error("Nudge dequeue failed", worker_id=worker_id, exc_info=True)
            raise
        self._commit("dequeue", worker_id=worker_id)

        if not claimed_ids:
            return []

        if len(claimed_ids) < len(candidate_ids):
            logger.info(
                "Some nudge candidates were claimed by another worker",
                worker_id=worker_id,
                candidates=len(candidate_ids),
                claimed=len(claimed_ids)
            )

        # Claimed rows were updated behind the identity map's back
        db.session.expire_all()
        return (
            NudgeJob.query.filter(NudgeJob.id.in_(claimed_ids))
            .order_by(NudgeJob.available_at.asc(), NudgeJob.id.asc())
            .all()
        )

    # ------------------------------------------------------------------
    # outcomes
    # ------------------------------------------------------------------

    def mark_success(self, job_id, log_id=None):
        """Mark a job sent, release its lease and move its log row to sent."""
        job = db.session.get(NudgeJob, job_id)
        if job is None:
            logger.warning("mark_success on unknown nudge job", job_id=job_id)
            return
        if NudgeStatus(job.status).is_terminal:
            logger.info("mark_success on terminal nudge job ignored", job_id=job_id, status=job.status)
            return

        now = utcnow()
        job.status = NudgeStatus.SENT.value
        job.attempt = job.attempt + 1
        job.locked_at = None
        job.locked_by = None
        job.last_error = None
        job.updated_at = now

        log = self._resolve_log(job, log_id)
        if log is not None and log.status == NudgeStatus.QUEUED.value:
            log.status = NudgeStatus.SENT.value
            log.sent_at = now
            log.attempts = job.attempt
            log.error = None
            log.updated_at = now

        self._commit("mark_success", job_id=job_id)
        logger.info("Nudge delivered", job_id=job_id, attempt=job.attempt)

    def mark_failure(self, job_id, log_id, error, max_retries, current_attempt) -> bool:
        """
        Record a failed delivery attempt.

        If current_attempt + 1 reaches max_retries the job and log become
        terminally failed; otherwise the lease is released and the job is
        pushed back by backoff_delay(current_attempt). Calling this on a job
        that is already terminal changes nothing.

        Returns:
            bool: True if the job is (now) terminally failed
        """
        job = db.session.get(NudgeJob, job_id)
        if job is None:
            logger.warning("mark_failure on unknown nudge job", job_id=job_id)
            return True
        if NudgeStatus(job.status).is_terminal:
            logger.info("mark_failure on terminal nudge job ignored", job_id=job_id, status=job.status)
            return job.status == NudgeStatus.FAILED.value

        now = utcnow()
        error_text = str(error)[:ERROR_MAX_LENGTH] if error else "unknown error"
        next_attempt = current_attempt + 1
        terminal = next_attempt >= max_retries

        job.attempt = next_attempt
        job.last_error = error_text
        job.locked_at = None
        job.locked_by = None
        job.updated_at = now
        if terminal:
            job.status = NudgeStatus.FAILED.value
        else:
            job.available_at = now + self.backoff_delay(current_attempt)

        log = self._resolve_log(job, log_id)
        if log is not None and log.status == NudgeStatus.QUEUED.value:
            log.attempts = next_attempt
            log.error = error_text
            log.updated_at = now
            if terminal:
                log.status = NudgeStatus.FAILED.value

        self._commit("mark_failure", job_id=job_id)

        if terminal:
            logger.error(
                f"Nudge job {job_id} failed after {next_attempt} attempts",
                job_id=job_id,
                max_retries=max_retries,
                error=error_text[:100]
            )
        else:
            logger.warning(
                f"Nudge job {job_id} will retry ({next_attempt}/{max_retries})",
                job_id=job_id,
                next_available_at=job.available_at.isoformat(),
                error=error_text[:100]
            )
        return terminal

    # ------------------------------------------------------------------
    # log reads
    # ------------------------------------------------------------------

    def log_for_job(self, job_id) -> Optional[NudgeLog]:
        """Latest log row (current attempt lineage) for a job."""
        return (
            NudgeLog.query.filter_by(job_id=job_id)
            .order_by(NudgeLog.id.desc())
            .first()
        )

    def list_logs(self, hub_id=None, status=None, channel=None, search=None,
                  job_id=None, page=0, limit=20) -> Tuple[List[NudgeLog], bool]:
        """Newest-first page of log rows plus whether another page exists."""
        query = NudgeLog.query
        if hub_id:
            query = query.filter(NudgeLog.hub_id == hub_id)
        if status:
            query = query.filter(NudgeLog.status == status)
        if channel:
            query = query.filter(NudgeLog.channel == channel)
        if job_id is not None:
            query = query.filter(NudgeLog.job_id == job_id)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(NudgeLog.member_id.ilike(pattern), NudgeLog.recipe_name.ilike(pattern)))

        rows = (
            query.order_by(NudgeLog.created_at.desc(), NudgeLog.id.desc())
            .offset(page * limit)
            .limit(limit + 1)
            .all()
        )
        return rows[:limit], len(rows) > limit
