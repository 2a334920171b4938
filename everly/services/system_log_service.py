from sqlalchemy.exc import SQLAlchemyError

from everly.datetime_utils import utcnow
from everly.logging_config import get_logger
logger = get_logger(__name__)


class SystemLogService:
    """Service for system-level logging"""

    @staticmethod
    def log_error(category, operation, error, context=None):
        """Log system error to database.

        Runs in a separate transaction. If the database itself is the problem
        the row is dropped and only the structured log line remains.
        """
        from everly.models import SystemLog, db
        import traceback

        logger.error(f"System error: {category} in {operation}", error=str(error), exc_info=error)

        system_log = SystemLog(
            timestamp=utcnow(),
            level='ERROR',
            category=category,
            operation=operation,
            message=str(error),
            context={
                'stack_trace': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
                'error_type': type(error).__name__,
                **(context or {})
            }
        )

        try:
            db.session.add(system_log)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.error("Could not persist system log", category=category, operation=operation, exc_info=True)
            return None

        return system_log
