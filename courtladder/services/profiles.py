"""Player-facing rating views plus onboarding and admin rating changes."""
import base64
import binascii
import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from courtladder.app import db
from courtladder.errors import CategoryLocked, NotFound, ValidationError
from courtladder.models import EloHistoryEntry, LedgerReason, User
from courtladder.services.match_store import atomic
from courtladder.services.rating import (
    CATEGORY_FLOORS, LOWEST_CATEGORY, starting_elo_for_category,
)
from courtladder.services.rating_engine import (
    append_ledger_entry, effective_outcomes, get_or_create_profile, lock_profiles,
)
from courtladder.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

_RECENT_WINDOW = timedelta(days=30)
_RECENT_FORM_SIZE = 10
_CURSOR_PREFIX = 'elo:'
_MAX_ADJUSTMENT = 1000

VALID_CATEGORIES = tuple(band for band, _ in CATEGORY_FLOORS) + (LOWEST_CATEGORY,)


def _require_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('User not found')
    return user


def get_competitive_profile(user_id):
    """Current rating, counters, 30-day rating movement and last ten outcomes."""
    with atomic():
        profile = get_or_create_profile(user_id)

    since = utcnow_naive() - _RECENT_WINDOW
    elo_delta_30d = (
        db.session.query(func.coalesce(func.sum(EloHistoryEntry.delta), 0))
        .filter(
            EloHistoryEntry.user_id == user_id,
            EloHistoryEntry.created_at >= since,
            EloHistoryEntry.reason != LedgerReason.INIT_CATEGORY,
        )
        .scalar()
    )
    outcomes = list(effective_outcomes(user_id).values())
    last10 = ['W' if result == 'win' else 'L' for result in reversed(outcomes[-_RECENT_FORM_SIZE:])]

    data = profile.to_dict()
    data['elo_delta_30d'] = int(elo_delta_30d or 0)
    data['last10'] = last10
    return data


def _encode_cursor(entry_id):
    raw = f'{_CURSOR_PREFIX}{entry_id}'.encode('utf-8')
    return base64.urlsafe_b64encode(raw).decode('ascii')


def _decode_cursor(cursor):
    try:
        raw = base64.urlsafe_b64decode(str(cursor).encode('ascii')).decode('utf-8')
    except (binascii.Error, UnicodeError, ValueError):
        raise ValidationError('Invalid cursor')
    if not raw.startswith(_CURSOR_PREFIX):
        raise ValidationError('Invalid cursor')
    try:
        return int(raw[len(_CURSOR_PREFIX):])
    except ValueError:
        raise ValidationError('Invalid cursor')


def list_elo_history(user_id, cursor=None, limit=None):
    """Newest-first page of a player's ledger.

    Returns ``(items, next_cursor)``; ``next_cursor`` is None on the last page.
    """
    max_limit = current_app.config.get('ELO_HISTORY_MAX_LIMIT', 100)
    if limit is None:
        limit = current_app.config.get('ELO_HISTORY_DEFAULT_LIMIT', 20)
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= max_limit:
        raise ValidationError(f'limit must be between 1 and {max_limit}')

    query = EloHistoryEntry.query.filter_by(user_id=user_id)
    if cursor:
        query = query.filter(EloHistoryEntry.id < _decode_cursor(cursor))
    entries = query.order_by(EloHistoryEntry.id.desc()).limit(limit + 1).all()

    page = entries[:limit]
    next_cursor = _encode_cursor(page[-1].id) if len(entries) > limit else None
    return [entry.to_dict() for entry in page], next_cursor


def set_initial_category(user_id, category):
    """Onboarding: start the player at the floor of the category they picked.

    Allowed until the first rated result locks the category. The rating is
    set to the category floor outright, so an earlier admin adjustment is
    replaced rather than carried over; the ledger keeps both entries.
    """
    if isinstance(category, bool) or category not in VALID_CATEGORIES:
        raise ValidationError(
            'Category must be between 1 and 8', allowed=list(VALID_CATEGORIES),
        )
    target_elo = starting_elo_for_category(category)

    with atomic():
        profile = lock_profiles([user_id])[user_id]
        if profile.category_locked:
            raise CategoryLocked()
        delta = target_elo - profile.elo
        if delta:
            append_ledger_entry(
                profile, delta, LedgerReason.INIT_CATEGORY,
                note=f'Onboarding category {category}',
            )
        # no rated result yet, so the peak is the starting rating
        profile.peak_elo = profile.elo
        profile.initial_category = category

    logger.info('User %s onboarded at category %s (elo %s)', user_id, category, target_elo)
    return profile.to_dict()


def adjust_rating(admin_id, user_id, delta, note=None):
    """Manual rating correction by a platform admin, recorded in the ledger."""
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError('delta must be a non-zero integer')
    if abs(delta) > _MAX_ADJUSTMENT:
        raise ValidationError(f'delta must be between -{_MAX_ADJUSTMENT} and {_MAX_ADJUSTMENT}')
    note = str(note or '').strip()
    if not note:
        raise ValidationError('A note explaining the adjustment is required')
    _require_user(user_id)

    with atomic():
        profile = lock_profiles([user_id])[user_id]
        entry = append_ledger_entry(
            profile, delta, LedgerReason.ADMIN_ADJUSTMENT, note=note[:500],
        )

    logger.warning('Admin %s adjusted rating of user %s by %+d: %s', admin_id, user_id, delta, note)
    return {'profile': profile.to_dict(), 'entry': entry.to_dict()}
