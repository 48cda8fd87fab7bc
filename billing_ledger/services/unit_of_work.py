"""
Unit of work - the atomicity boundary of every ledger operation.

A ledger operation is a plain function taking the session as its first
argument. run_in_transaction() executes it, commits once at the end and
rolls everything back on any failure, so a payment row never becomes
visible without its invoice, customer and audit writes.
"""
import logging
from sqlalchemy.exc import SQLAlchemyError, DBAPIError
from sqlalchemy.orm.exc import StaleDataError
from billing_ledger.exceptions import LedgerError, ConcurrencyConflictError, PersistenceError

logger = logging.getLogger(__name__)

# PostgreSQL serialization_failure / deadlock_detected
RETRYABLE_SQLSTATES = {'40001', '40P01'}


def _is_retryable(error: DBAPIError) -> bool:
    """True for driver errors that mean "another transaction got there first"."""
    orig = getattr(error, 'orig', None)
    sqlstate = getattr(orig, 'pgcode', None) or getattr(orig, 'sqlstate', None)
    return sqlstate in RETRYABLE_SQLSTATES


class UnitOfWork:
    """Runs ledger operations inside one database transaction."""

    def __init__(self, session):
        self.session = session

    def run_in_transaction(self, fn, *args, operation: str = None, context: dict = None, **kwargs):
        """
        Execute fn(session, *args, **kwargs) and commit.

        Args:
            fn: Operation to run; receives the session first
            operation: Name used in log lines (defaults to fn.__name__)
            context: Correlation fields (tenant_id, user_id, ...) logged on failure

        Returns:
            Whatever fn returns

        Raises:
            LedgerError: Business errors raised by fn, after rollback
            ConcurrencyConflictError: Optimistic version mismatch or serialization failure
            PersistenceError: Any other database failure
        """
        operation = operation or fn.__name__
        context = context or {}
        session = self.session

        try:
            result = fn(session, *args, **kwargs)
            session.commit()
            return result

        except LedgerError:
            # Business logic errors - rollback and re-raise
            session.rollback()
            raise

        except StaleDataError as e:
            session.rollback()
            logger.warning(f"Concurrency conflict in {operation} {context}: {e}")
            raise ConcurrencyConflictError() from e

        except DBAPIError as e:
            session.rollback()
            if _is_retryable(e):
                logger.warning(f"Serialization failure in {operation} {context}: {e.orig}")
                raise ConcurrencyConflictError() from e
            logger.exception(f"Database error in {operation} {context}")
            raise PersistenceError() from e

        except SQLAlchemyError as e:
            session.rollback()
            logger.exception(f"Database error in {operation} {context}")
            raise PersistenceError() from e

        except Exception:
            session.rollback()
            logger.exception(f"Unexpected error in {operation} {context}")
            raise
