from flask_sqlalchemy import SQLAlchemy
from enum import Enum

from everly.datetime_utils import utcnow, format_datetime_utc

db = SQLAlchemy()


def is_unique_violation(error):
    """True when an IntegrityError came from a unique/primary key constraint (SQLSTATE 23505)."""
    orig = getattr(error, "orig", None)
    if getattr(orig, "pgcode", None) == "23505":
        return True
    if getattr(getattr(orig, "diag", None), "sqlstate", None) == "23505":
        return True
    text = str(orig or error).lower()
    return "unique constraint" in text or "duplicate key" in text


class NudgeStatus(str, Enum):
    """Lifecycle states shared by queue jobs and their log rows.

    SKIPPED is only ever written to nudge_logs, for enqueue requests that
    were refused as duplicate or rate limited.
    """
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self):
        return self in (NudgeStatus.SENT, NudgeStatus.FAILED, NudgeStatus.SKIPPED)


# ---------------------------------------------------------------------------
# Whop-synced community state
# ---------------------------------------------------------------------------

class Member(db.Model):
    __tablename__ = "members"
    __table_args__ = (db.UniqueConstraint("hub_id", "whop_member_id", name="_hub_whop_member_uc"),)

    id = db.Column(db.Integer, primary_key=True)
    hub_id = db.Column(db.String(64), nullable=False, index=True)
    whop_member_id = db.Column(db.String(128), nullable=False)
    role = db.Column(db.String(64), nullable=False, default="member")
    joined_at = db.Column(db.DateTime, nullable=True)
    last_active_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Member {self.hub_id}/{self.whop_member_id} - {self.role}>"


class ActivityLog(db.Model):
    """Member activity mirrored from Whop (posts, payments)."""
    __tablename__ = "activity_logs"
    __table_args__ = (
        db.UniqueConstraint("hub_id", "whop_event_id", name="_activity_hub_event_uc"),
        db.Index("idx_activity_hub_created", "hub_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    hub_id = db.Column(db.String(64), nullable=False)
    member_id = db.Column(db.String(128), nullable=True)
    type = db.Column(db.String(32), nullable=False)  # 'posted', 'payment'
    meta = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    whop_event_id = db.Column(db.String(128), nullable=True)

    def __repr__(self):
        return f"<ActivityLog {self.hub_id} - {self.type} - {self.whop_event_id}>"


class BountyEvent(db.Model):
    __tablename__ = "bounty_events"
    __table_args__ = (db.UniqueConstraint("hub_id", "whop_event_id", name="_bounty_hub_event_uc"),)

    id = db.Column(db.Integer, primary_key=True)
    hub_id = db.Column(db.String(64), nullable=False, index=True)
    bounty_id = db.Column(db.String(128), nullable=True)
    member_id = db.Column(db.String(128), nullable=True)
    status = db.Column(db.String(32), nullable=False)
    meta = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    whop_event_id = db.Column(db.String(128), nullable=True)


# ---------------------------------------------------------------------------
# Nudge delivery pipeline
# ---------------------------------------------------------------------------

class NudgeJob(db.Model):
    """
    A pending/leased/completed nudge delivery.

    A job is eligible for dequeue iff it is queued, its lease is free (or
    expired) and available_at <= now. Only NudgeQueueStore mutates
    attempt/lock/status fields.
    """
    __tablename__ = "nudge_queue"
    __table_args__ = (
        db.Index("idx_nudge_queue_eligible", "status", "available_at"),
        db.Index("idx_nudge_queue_member", "hub_id", "member_id", "recipe_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    hub_id = db.Column(db.String(64), nullable=False)
    member_id = db.Column(db.String(128), nullable=False)
    recipe_name = db.Column(db.String(128), nullable=False)
    channel = db.Column(db.String(32), nullable=False, default="stub")
    payload = db.Column(db.JSON, nullable=False)  # message, variables, channel, metadata
    status = db.Column(db.String(16), nullable=False, default=NudgeStatus.QUEUED.value)
    attempt = db.Column(db.Integer, nullable=False, default=0)
    available_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    locked_at = db.Column(db.DateTime, nullable=True)
    locked_by = db.Column(db.String(64), nullable=True)
    dedupe_key = db.Column(db.String(64), nullable=False, unique=True)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<NudgeJob {self.id} - {self.recipe_name} -> {self.member_id} - {self.status}>"

    @property
    def message(self):
        return (self.payload or {}).get("message", "")

    @property
    def variables(self):
        return (self.payload or {}).get("variables") or {}

    def to_dict(self):
        return {
            'id': self.id,
            'hub_id': self.hub_id,
            'member_id': self.member_id,
            'recipe_name': self.recipe_name,
            'channel': self.channel,
            'payload': self.payload,
            'status': self.status,
            'attempt': self.attempt,
            'available_at': format_datetime_utc(self.available_at),
            'locked_at': format_datetime_utc(self.locked_at),
            'locked_by': self.locked_by,
            'created_at': format_datetime_utc(self.created_at),
            'updated_at': format_datetime_utc(self.updated_at),
        }


class NudgeLog(db.Model):
    """Append/update-only audit record, one row per attempt lineage of a job."""
    __tablename__ = "nudge_logs"
    __table_args__ = (
        db.Index("idx_nudge_logs_member_window", "hub_id", "member_id", "scheduled_at"),
        db.Index("idx_nudge_logs_created", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, nullable=True, index=True)
    hub_id = db.Column(db.String(64), nullable=False)
    recipe_name = db.Column(db.String(128), nullable=False)
    member_id = db.Column(db.String(128), nullable=False)
    channel = db.Column(db.String(32), nullable=False)
    message_preview = db.Column(db.String(280), nullable=True)
    message_hash = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=NudgeStatus.QUEUED.value)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    error = db.Column(db.Text, nullable=True)
    scheduled_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<NudgeLog {self.id} - job {self.job_id} - {self.status}>"

    def to_dict(self, include_error=True):
        data = {
            'id': self.id,
            'job_id': self.job_id,
            'hub_id': self.hub_id,
            'recipe_name': self.recipe_name,
            'member_id': self.member_id,
            'channel': self.channel,
            'message_preview': self.message_preview,
            'status': self.status,
            'attempts': self.attempts,
            'scheduled_at': format_datetime_utc(self.scheduled_at),
            'sent_at': format_datetime_utc(self.sent_at),
            'created_at': format_datetime_utc(self.created_at),
        }
        if include_error:
            data['error'] = self.error
        return data


# ---------------------------------------------------------------------------
# Operational records
# ---------------------------------------------------------------------------

class Metric(db.Model):
    """Latest value of an operational metric (e.g. last_webhook_at)."""
    __tablename__ = "metrics"

    key = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class SystemLog(db.Model):
    """Out-of-band record of errors that were not surfaced to the caller."""
    __tablename__ = "system_logs"

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    level = db.Column(db.String(10), nullable=False)  # INFO, WARNING, ERROR
    category = db.Column(db.String(50), nullable=False, index=True)  # 'webhook', 'worker'
    operation = db.Column(db.String(100), nullable=False)
    message = db.Column(db.Text, nullable=False)
    context = db.Column(db.JSON, nullable=True)

    def __repr__(self):
        return f"<SystemLog {self.category}/{self.operation} - {self.level} - {self.message[:50]}...>"


class RateLimitCounter(db.Model):
    """Fixed-window request counter shared by all app instances."""
    __tablename__ = "rate_limit_counters"
    __table_args__ = (db.UniqueConstraint("bucket_id", "window_start", name="_rate_limit_bucket_window_uc"),)

    id = db.Column(db.Integer, primary_key=True)
    bucket_id = db.Column(db.String(255), nullable=False)
    window_start = db.Column(db.DateTime, nullable=False)
    count = db.Column(db.Integer, nullable=False, default=0)
