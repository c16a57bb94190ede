import functools
import logging
import time
from contextlib import contextmanager

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError, OperationalError

from errors import ConflictError

logger = logging.getLogger(__name__)

db = SQLAlchemy()


@contextmanager
def atomic(conflict_message=None):
    """Run a block as one unit of work: commit on success, roll back on any error.

    If ``conflict_message`` is given, an ``IntegrityError`` raised inside the
    block (a uniqueness invariant tripped by a concurrent writer) is re-raised
    as ``ConflictError`` with that message.
    """
    try:
        yield db.session
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        logger.error(f"Integrity violation, rolled back: {e.orig}")
        if conflict_message is None:
            raise
        raise ConflictError(conflict_message) from e
    except Exception:
        db.session.rollback()
        raise


# Retry decorator
def retry_db_operation(max_attempts=3, delay=1):
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempts = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except OperationalError as e:
                    logger.error(f"Database operation failed: {str(e)}")
                    db.session.rollback()
                    attempts += 1
                    if attempts >= max_attempts:
                        raise
                    time.sleep(delay)
                    logger.debug(f"Retrying database operation ({attempts}/{max_attempts})")
        return wrapper
    return decorator
