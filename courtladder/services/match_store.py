"""Transaction boundaries and row access for match results."""
import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from courtladder.app import db
from courtladder.errors import Conflict, NotFound, StorageUnavailable
from courtladder.models import MatchResult, MatchResultEvent

logger = logging.getLogger(__name__)


class ConcurrentUpdate(Conflict):
    """Another transaction changed the same rows first; the work was rolled back."""

    def __init__(self, message='This result was changed by someone else, reload it and try again'):
        super().__init__(message)


@contextmanager
def atomic():
    """Run a block as one transaction: commit on success, roll back on any error.

    Optimistic-lock losses and unique-guard violations surface as
    ConcurrentUpdate so callers can re-read and re-evaluate. Connection or
    lock-timeout failures surface as the retryable StorageUnavailable.
    """
    try:
        yield db.session
        db.session.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.session.rollback()
        logger.info('Concurrent write lost, transaction rolled back: %s', exc)
        raise ConcurrentUpdate() from exc
    except OperationalError as exc:
        db.session.rollback()
        logger.warning('Storage failure, transaction rolled back: %s', exc)
        raise StorageUnavailable() from exc
    except Exception:
        db.session.rollback()
        raise


def get_match_result(match_id):
    match = db.session.get(MatchResult, match_id)
    if not match:
        raise NotFound('Match result not found')
    return match


def lock_match_result(match_id):
    """Load a match result with a row lock, discarding any stale session copy."""
    match = (
        MatchResult.query
        .filter_by(id=match_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not match:
        raise NotFound('Match result not found')
    return match


def record_event(match, actor_id, action, from_status, reason=None, message=None):
    event = MatchResultEvent(
        match_result_id=match.id,
        actor_user_id=actor_id,
        action=action,
        from_status=from_status,
        to_status=match.status,
        reason=reason,
        message=message,
    )
    db.session.add(event)
    return event
