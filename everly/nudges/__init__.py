from flask import Blueprint, current_app, jsonify, request

from everly.auth.utils import nudges_enabled_required, worker_secret_required
from everly.logging_config import get_logger
from everly.nudges.dispatcher import NudgeDispatcher, validate_dispatch_payload
from everly.nudges.errors import NudgeValidationError
from everly.nudges.worker import NudgeWorker
from everly.services.rate_limiter import client_ip

logger = get_logger(__name__)

MAX_LOG_PAGE_SIZE = 100

# Blueprint for nudge pipeline routes
nudges_bp = Blueprint("nudges", __name__)


def get_queue_store():
    return current_app.extensions["nudge_queue_store"]


def get_dispatcher():
    return NudgeDispatcher(get_queue_store(), dedupe_period=current_app.config.get("NUDGE_DEDUPE_PERIOD", "week"))


def get_worker():
    return NudgeWorker(
        get_queue_store(),
        current_app.extensions["nudge_provider"],
        batch_size=current_app.config.get("NUDGE_BATCH_SIZE", 20),
    )


def _rate_limit_response(scope, key):
    """429 response if scope:key is over the dispatch budget, else None."""
    limiter = current_app.extensions["rate_limiter"]
    decision = limiter.check(
        scope,
        key,
        current_app.config.get("DISPATCH_RATE_LIMIT_WINDOW_SECONDS", 60),
        current_app.config.get("DISPATCH_RATE_LIMIT_MAX", 30),
    )
    if decision.allowed:
        return None
    logger.warning("Dispatch rate limited", scope=scope, key=key, retry_after=decision.retry_after)
    response = jsonify({'error': 'rate_limited', 'retry_after': decision.retry_after})
    response.status_code = 429
    response.headers["Retry-After"] = str(decision.retry_after)
    return response


@nudges_bp.route("/nudges/dispatch", methods=["POST"])
@nudges_enabled_required
def dispatch_nudges():
    """Validate, render and enqueue a batch of nudges for one hub."""
    limited = _rate_limit_response("ip", client_ip(request))
    if limited is not None:
        return limited

    data = request.get_json(silent=True)
    if data is None:
        return jsonify({'error': 'invalid_request', 'details': [{'loc': '', 'msg': 'Body must be JSON', 'type': 'json_invalid'}]}), 400

    try:
        dispatch_request = validate_dispatch_payload(data)
    except NudgeValidationError as e:
        return jsonify({'error': 'invalid_request', 'details': e.details}), 400

    limited = _rate_limit_response("hub", dispatch_request.hub_id)
    if limited is not None:
        return limited

    try:
        result = get_dispatcher().dispatch_request(dispatch_request)
    except Exception:
        logger.error("Nudge dispatch failed", hub_id=dispatch_request.hub_id, exc_info=True)
        return jsonify({'error': 'internal_error'}), 500

    return jsonify({'ok': True, **result.to_dict()}), 200


@nudges_bp.route("/nudges/worker", methods=["POST"])
@nudges_enabled_required
@worker_secret_required
def run_nudge_worker():
    """Lease and deliver one bounded batch of due nudges."""
    try:
        result = get_worker().run_once(current_app.config.get("NUDGE_MAX_RETRIES", 3))
    except Exception:
        logger.error("Nudge worker run failed", exc_info=True)
        return jsonify({'error': 'internal_error'}), 500

    return jsonify({'ok': True, **result.to_dict()}), 200


@nudges_bp.route("/admin/nudges/logs", methods=["GET"])
@worker_secret_required
def list_nudge_logs():
    """Paged nudge audit log, newest first. Filters: hub_id, status, channel, search, job_id."""
    try:
        page = max(0, int(request.args.get('page', 0)))
        limit = min(MAX_LOG_PAGE_SIZE, max(1, int(request.args.get('limit', 20))))
        job_id = request.args.get('job_id')
        job_id = int(job_id) if job_id else None
    except ValueError:
        return jsonify({'error': 'invalid_request', 'details': [{'loc': 'query', 'msg': 'page, limit and job_id must be integers', 'type': 'int_parsing'}]}), 400

    try:
        logs, has_more = get_queue_store().list_logs(
            hub_id=request.args.get('hub_id'),
            status=request.args.get('status'),
            channel=request.args.get('channel'),
            search=request.args.get('search'),
            job_id=job_id,
            page=page,
            limit=limit,
        )
    except Exception:
        logger.error("Failed to fetch nudge logs", exc_info=True)
        return jsonify({'logs': [], 'has_more': False, 'error': 'internal_error'}), 500

    return jsonify({'logs': [log.to_dict() for log in logs], 'has_more': has_more}), 200
