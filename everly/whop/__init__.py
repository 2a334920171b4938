from flask import Blueprint, request, current_app, jsonify
import json

from everly.datetime_utils import utcnow
from everly.logging_config import get_logger
from everly.services.metrics_service import record_metric
from everly.services.system_log_service import SystemLogService
from everly.whop.events import map_whop_event
from everly.whop.signature import extract_signature, verify_hmac_sha256

logger = get_logger(__name__)

HUB_HEADER = "x-everly-hub-id"

# Blueprint for Whop webhook routes
whop_bp = Blueprint("whop", __name__)


def resolve_hub_id(event, headers):
    """Payload company id first, then the hub header, then the configured demo hub."""
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    return (
        data.get("company_id")
        or event.get("company_id")
        or headers.get(HUB_HEADER)
        or current_app.config.get("DEMO_HUB_ID")
    )


@whop_bp.route("/whop", methods=["GET"])
def whop_webhook_health():
    return jsonify({"ok": True}), 200


@whop_bp.route("/whop", methods=["POST"])
def whop_webhook():
    """
    Receive a Whop webhook.

    Only a bad signature or an unresolvable hub gets a 400. Everything else is
    acknowledged with 200 so the sender does not start a retry storm; mapping
    failures are recorded in system_logs instead.
    """
    raw = request.get_data(cache=True)
    result = verify_hmac_sha256(raw, extract_signature(request.headers), current_app.config.get("WHOP_WEBHOOK_SECRET"))
    if not result.ok:
        logger.warning("Rejected Whop webhook", reason=result.reason)
        return jsonify({"error": "bad_signature", "reason": result.reason}), 400

    try:
        event = json.loads(raw or b"{}")
    except ValueError:
        logger.warning("Whop webhook body is not valid JSON", size=len(raw or b""))
        return jsonify({"ok": True, "outcome": "unparseable"}), 200
    if not isinstance(event, dict):
        logger.warning("Whop webhook body is not a JSON object")
        return jsonify({"ok": True, "outcome": "unparseable"}), 200

    hub_id = resolve_hub_id(event, request.headers)
    if not hub_id:
        logger.warning("Whop webhook without resolvable hub", event_type=event.get("type"))
        return jsonify({"error": "missing_hub"}), 400

    try:
        outcome = map_whop_event(str(hub_id), event).value
    except Exception as e:
        # Verified but not applied: acknowledge anyway so Whop does not retry
        outcome = "error"
        SystemLogService.log_error(
            "webhook",
            "map_whop_event",
            e,
            context={"hub_id": hub_id, "event_type": event.get("type"), "whop_event_id": event.get("id")},
        )

    runner = current_app.extensions["background_runner"]
    runner.submit(
        "record_last_webhook_at",
        record_metric,
        "last_webhook_at",
        {"at": utcnow().isoformat() + "Z", "source": "whop", "type": event.get("type"), "outcome": outcome},
    )

    return jsonify({"ok": True, "outcome": outcome}), 200
