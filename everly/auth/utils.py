"""Request guards for infrastructure-invoked endpoints."""
from functools import wraps
import hmac

from flask import current_app, jsonify, request

from everly.logging_config import get_logger

logger = get_logger(__name__)


def bearer_token():
    """Token from an 'Authorization: Bearer <token>' header, or None."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def nudges_enabled_required(f):
    """
    Decorator that short-circuits with 503 while NUDGES_ENABLED is off.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_app.config.get("NUDGES_ENABLED"):
            return jsonify({'error': 'nudges_disabled'}), 503
        return f(*args, **kwargs)
    return decorated_function


def worker_secret_required(f):
    """
    Decorator requiring the pre-shared worker secret as a bearer token.

    The secret is distinct from any per-hub token: these routes are called by
    a scheduler, not a logged-in user. An unset secret rejects everything.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("NUDGE_WORKER_SECRET")
        token = bearer_token()
        if not expected or token is None or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            logger.warning("Rejected worker-authenticated request", path=request.path, remote_addr=request.remote_addr)
            return jsonify({'error': 'unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated_function
