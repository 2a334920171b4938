"""
Map verified Whop webhook events onto members / activity / bounty rows.

Every branch is idempotent: members are upserted on (hub_id, whop_member_id),
everything else is inserted under a unique (hub_id, whop_event_id) constraint
and a unique violation means the event was already applied.
"""
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from everly.datetime_utils import utcnow, parse_iso_datetime
from everly.logging_config import get_logger
from everly.models import db, is_unique_violation, Member, ActivityLog, BountyEvent

logger = get_logger(__name__)


class WhopEventType(str, Enum):
    MEMBER_CREATED = "member.created"
    MESSAGE_CREATED = "message.created"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    CHALLENGE_COMPLETED = "challenge.completed"
    BOUNTY_COMPLETED = "bounty.completed"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["WhopEventType"]:
        try:
            return cls(raw)
        except (ValueError, TypeError):
            return None


class MappingOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def _as_dict(value) -> Dict[str, Any]:
    """Nested payload objects are only trusted when they really are objects."""
    return value if isinstance(value, dict) else {}


def _insert_once(row, event_id) -> MappingOutcome:
    """Insert and flush row; a unique violation means already applied.

    map_whop_event owns the whole transaction (one row per event), so rolling
    the session back here discards nothing else.
    """
    try:
        db.session.add(row)
        db.session.flush()
        return MappingOutcome.APPLIED
    except IntegrityError as e:
        db.session.rollback()
        if is_unique_violation(e):
            logger.info("Whop event already applied", whop_event_id=event_id, table=row.__tablename__)
            return MappingOutcome.DUPLICATE
        logger.error("Integrity error applying Whop event", whop_event_id=event_id, exc_info=True)
        raise


def _map_member_created(hub_id, event_id, ts, data) -> MappingOutcome:
    user = _as_dict(data.get("user"))
    whop_member_id = data.get("id") or user.get("id")
    if not whop_member_id:
        logger.warning("member.created without member id, skipping", hub_id=hub_id, whop_event_id=event_id)
        return MappingOutcome.IGNORED

    tier = _as_dict(data.get("tier"))
    role = str(tier.get("name") or "member").lower()
    joined_at = parse_iso_datetime(data.get("created_at")) or ts

    member = Member.query.filter_by(hub_id=hub_id, whop_member_id=str(whop_member_id)).first()
    if member:
        member.role = role
        member.last_active_at = ts
        db.session.flush()
        return MappingOutcome.DUPLICATE

    return _insert_once(
        Member(
            hub_id=hub_id,
            whop_member_id=str(whop_member_id),
            role=role,
            joined_at=joined_at,
            last_active_at=ts,
        ),
        event_id,
    )


def _map_message_created(hub_id, event_id, ts, data) -> MappingOutcome:
    user = _as_dict(data.get("user"))
    return _insert_once(
        ActivityLog(
            hub_id=hub_id,
            member_id=None,
            type="posted",
            meta={
                "channel_id": data.get("channel_id"),
                "url": data.get("url"),
                "whop_member_id": user.get("id"),
            },
            created_at=ts,
            whop_event_id=event_id,
        ),
        event_id,
    )


def _map_payment_succeeded(hub_id, event_id, ts, data) -> MappingOutcome:
    return _insert_once(
        ActivityLog(
            hub_id=hub_id,
            member_id=None,
            type="payment",
            meta={
                "amount_cents": data.get("amount_cents"),
                "whop_member_id": data.get("member_id"),
            },
            created_at=ts,
            whop_event_id=event_id,
        ),
        event_id,
    )


def _map_bounty_completed(hub_id, event_id, ts, data) -> MappingOutcome:
    bounty_id = data.get("challenge_id") or data.get("bounty_id")
    return _insert_once(
        BountyEvent(
            hub_id=hub_id,
            bounty_id=str(bounty_id) if bounty_id is not None else None,
            member_id=None,
            status="completed",
            meta={"whop_member_id": data.get("member_id")},
            created_at=ts,
            whop_event_id=event_id,
        ),
        event_id,
    )


EVENT_HANDLERS = {
    WhopEventType.MEMBER_CREATED: _map_member_created,
    WhopEventType.MESSAGE_CREATED: _map_message_created,
    WhopEventType.PAYMENT_SUCCEEDED: _map_payment_succeeded,
    WhopEventType.CHALLENGE_COMPLETED: _map_bounty_completed,
    WhopEventType.BOUNTY_COMPLETED: _map_bounty_completed,
}


def map_whop_event(hub_id: str, event: Dict[str, Any]) -> MappingOutcome:
    """
    Apply a verified Whop event to the database and commit.

    Args:
        hub_id: Target hub
        event: Parsed webhook payload ({id, type, created_at?, data?})

    Returns:
        MappingOutcome: applied, duplicate (already applied) or ignored (unknown type)

    Raises:
        SQLAlchemyError: on any database error other than a uniqueness conflict.
        Exception: anything else a handler raises on a malformed payload.
            The session is rolled back before re-raising either.
    """
    event_type = WhopEventType.parse(event.get("type"))
    if event_type is None:
        logger.info("Ignoring unsupported Whop event type", hub_id=hub_id, event_type=event.get("type"))
        return MappingOutcome.IGNORED

    event_id = event.get("id")
    event_id = str(event_id) if event_id is not None else None
    ts = parse_iso_datetime(event.get("created_at")) or utcnow()
    data = _as_dict(event.get("data"))

    handler = EVENT_HANDLERS[event_type]
    try:
        outcome = handler(hub_id, event_id, ts, data)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error(
            "Failed to map Whop event",
            hub_id=hub_id,
            event_type=event_type.value,
            whop_event_id=event_id,
            exc_info=True
        )
        raise

    logger.info(
        "Whop event mapped",
        hub_id=hub_id,
        event_type=event_type.value,
        whop_event_id=event_id,
        outcome=outcome.value
    )
    return outcome
