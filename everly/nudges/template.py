import hashlib
import json
import re
from datetime import datetime, timezone

PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

DEDUPE_PERIODS = ("day", "week")


def render_template(template, variables=None):
    """
    Replace every {{name}} with str(variables[name]).

    Missing or None values render as "". Substitution is literal and single
    pass: a value containing "{{other}}" is not expanded again.
    """
    variables = variables or {}

    def _sub(match):
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(_sub, template)


def compute_message_hash(message, variables, recipe_name):
    """Stable hash of a rendered message, stored on the log row for audit."""
    payload = json.dumps(
        {"message": message, "variables": variables or {}, "recipe_name": recipe_name},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def time_bucket(period, now=None):
    """ISO week ("2025-W09") or UTC date ("2025-02-27") for now."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    if period == "week":
        iso_year, iso_week, _ = now.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if period == "day":
        return now.strftime("%Y-%m-%d")
    raise ValueError(f"Unsupported dedupe period: {period!r} (expected one of {DEDUPE_PERIODS})")


def dedupe_key(hub_id, recipe_id, member_id, period="week", now=None):
    """SHA-256 of hub:recipe:member:bucket; identical within one bucket, used as a uniqueness value only."""
    key = f"{hub_id}:{recipe_id}:{member_id}:{time_bucket(period, now)}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
