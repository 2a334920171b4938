from everly.datetime_utils import utcnow
from everly.logging_config import get_logger
from everly.models import Metric, db

logger = get_logger(__name__)


def record_metric(key, value):
    """Upsert the latest value for an operational metric and commit."""
    metric = db.session.get(Metric, key)
    if metric is None:
        metric = Metric(key=key, value=value, updated_at=utcnow())
        db.session.add(metric)
    else:
        metric.value = value
        metric.updated_at = utcnow()
    db.session.commit()
    logger.debug("Metric recorded", key=key)
    return metric


def get_metric(key):
    metric = db.session.get(Metric, key)
    return metric.value if metric else None
