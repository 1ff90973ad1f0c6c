"""
Rating update engine: turns accepted competitive results into ledger entries.

Guarantees:
- Runs only for competitive results in an accepted status
- Runs at most once per result (compare-and-swap on ``elo_applied`` plus the
  ledger's unique (match_result_id, user_id, reason) constraint)
- Zero-sum rating changes between the two sides
- Ledger rows are append-only; corrections are compensating entries

Nothing here commits. Callers wrap the work in ``match_store.atomic()`` so the
status change and the ledger writes land together or not at all.
"""
import logging
from collections import OrderedDict

from flask import current_app
from sqlalchemy import func

from courtladder.app import db
from courtladder.errors import Conflict, StorageUnavailable
from courtladder.models import (
    EloHistoryEntry, LedgerReason, MatchResult, MatchStatus, MatchType, RatingProfile,
)
from courtladder.services.match_store import ConcurrentUpdate, atomic, lock_match_result
from courtladder.services.rating import (
    TEAM_A, TEAM_B, calculate_rating_deltas, category_for_elo,
)

logger = logging.getLogger(__name__)


def initial_elo():
    return current_app.config.get('ELO_INITIAL', 1200)


def _rating_settings():
    cfg = current_app.config
    return {
        'k_factor': cfg.get('ELO_K_FACTOR', 32),
        'min_delta': cfg.get('ELO_MIN_DELTA', 1),
        'max_delta': cfg.get('ELO_MAX_DELTA'),
    }


def _new_profile(user_id):
    elo = initial_elo()
    profile = RatingProfile(
        user_id=user_id,
        elo=elo,
        peak_elo=elo,
        category=category_for_elo(elo),
        wins=0,
        losses=0,
        matches_played=0,
        win_streak_current=0,
        win_streak_best=0,
        category_locked=False,
    )
    db.session.add(profile)
    return profile


def get_or_create_profile(user_id):
    """Unlocked profile read for views; creates the default profile on first use."""
    profile = RatingProfile.query.filter_by(user_id=user_id).first()
    if profile is None:
        profile = _new_profile(user_id)
        db.session.flush()
    return profile


def lock_profiles(user_ids):
    """Lock the rating rows of ``user_ids`` in ascending id order.

    Missing profiles are created at the initial rating. A concurrent insert of
    the same profile fails the unique constraint and the caller retries.
    """
    ids = sorted(set(user_ids))
    rows = (
        RatingProfile.query
        .filter(RatingProfile.user_id.in_(ids))
        .order_by(RatingProfile.user_id)
        .with_for_update()
        .populate_existing()
        .all()
    )
    by_user = {profile.user_id: profile for profile in rows}
    for user_id in ids:
        if user_id not in by_user:
            by_user[user_id] = _new_profile(user_id)
    db.session.flush()
    return by_user


def append_ledger_entry(profile, delta, reason, match_result_id=None, result=None, note=None):
    """Append one ledger row and move the profile's rating by ``delta``."""
    elo_before = profile.elo
    elo_after = elo_before + delta
    entry = EloHistoryEntry(
        user_id=profile.user_id,
        match_result_id=match_result_id,
        delta=delta,
        elo_before=elo_before,
        elo_after=elo_after,
        reason=reason,
        result=result,
        note=note,
    )
    db.session.add(entry)
    profile.elo = elo_after
    profile.peak_elo = max(profile.peak_elo or elo_after, elo_after)
    profile.category = category_for_elo(elo_after)
    return entry


def _record_outcome(profile, result):
    profile.matches_played += 1
    if result == 'win':
        profile.wins += 1
        profile.win_streak_current += 1
        profile.win_streak_best = max(profile.win_streak_best, profile.win_streak_current)
    else:
        profile.losses += 1
        profile.win_streak_current = 0
    profile.category_locked = True


def _undo_outcome(profile, result):
    profile.matches_played = max(profile.matches_played - 1, 0)
    if result == 'win':
        profile.wins = max(profile.wins - 1, 0)
    else:
        profile.losses = max(profile.losses - 1, 0)


def effective_outcomes(user_id):
    """Rated outcomes of a player, oldest first, with reversals applied.

    Returns an ordered mapping of match_result_id -> 'win' | 'loss'. An
    overturned result moves to the position of its correction.
    """
    entries = (
        EloHistoryEntry.query
        .filter(
            EloHistoryEntry.user_id == user_id,
            EloHistoryEntry.reason.in_(LedgerReason.OUTCOMES + (LedgerReason.MATCH_REVERSAL,)),
        )
        .order_by(EloHistoryEntry.id)
        .all()
    )
    outcomes = OrderedDict()
    for entry in entries:
        outcomes.pop(entry.match_result_id, None)
        if entry.reason != LedgerReason.MATCH_REVERSAL:
            outcomes[entry.match_result_id] = entry.result
    return outcomes


def _recompute_streaks(profile):
    current = best = 0
    for result in effective_outcomes(profile.user_id).values():
        if result == 'win':
            current += 1
            best = max(best, current)
        else:
            current = 0
    profile.win_streak_current = current
    profile.win_streak_best = best


def _team_ratings(match, profiles):
    return (
        [(uid, profiles[uid].elo) for uid in match.team_user_ids(TEAM_A)],
        [(uid, profiles[uid].elo) for uid in match.team_user_ids(TEAM_B)],
    )


def _claim_application(match):
    """Flip ``elo_applied`` false -> true in the database; False if already set."""
    db.session.flush()
    claimed = (
        MatchResult.query
        .filter_by(id=match.id, elo_applied=False)
        .update({'elo_applied': True}, synchronize_session='fetch')
    )
    return claimed == 1


def apply_rating_update(match):
    """Apply the rating effect of an accepted competitive result exactly once.

    Returns the list of RatingDelta written, or an empty list when another
    transaction already applied this result.
    """
    if not match.is_competitive:
        raise Conflict('Friendly results never affect ratings')
    if match.status not in MatchStatus.ACCEPTED:
        raise Conflict('Only confirmed or resolved results can affect ratings')

    if not _claim_application(match):
        logger.warning('Rating for match %s already applied, skipping', match.id)
        return []

    profiles = lock_profiles(match.participant_ids)
    team_a, team_b = _team_ratings(match, profiles)
    deltas = calculate_rating_deltas(team_a, team_b, match.winner_team, **_rating_settings())

    for change in deltas:
        profile = profiles[change.user_id]
        append_ledger_entry(
            profile, change.delta, LedgerReason.MATCH_RESULT,
            match_result_id=match.id, result=change.result,
        )
        _record_outcome(profile, change.result)

    db.session.flush()
    logger.info(
        'Applied rating for match %s: %s',
        match.id, ', '.join(f'{d.user_id}:{d.delta:+d}' for d in deltas),
    )
    return deltas


def apply_winner_correction(match, note=None):
    """Compensate an applied result whose winner was overturned on resolution.

    Every original delta is reversed with a ``match_reversal`` entry, then the
    corrected winner is rated against the post-reversal ratings with
    ``resolution_result`` entries.
    """
    if not match.elo_applied:
        raise Conflict('Result has no applied rating to correct')

    originals = (
        EloHistoryEntry.query
        .filter_by(match_result_id=match.id, reason=LedgerReason.MATCH_RESULT)
        .order_by(EloHistoryEntry.id)
        .all()
    )
    profiles = lock_profiles(match.participant_ids)

    for entry in originals:
        profile = profiles[entry.user_id]
        append_ledger_entry(
            profile, -entry.delta, LedgerReason.MATCH_REVERSAL,
            match_result_id=match.id, note=note,
        )
        _undo_outcome(profile, entry.result)

    team_a, team_b = _team_ratings(match, profiles)
    deltas = calculate_rating_deltas(team_a, team_b, match.winner_team, **_rating_settings())
    for change in deltas:
        profile = profiles[change.user_id]
        append_ledger_entry(
            profile, change.delta, LedgerReason.RESOLUTION_RESULT,
            match_result_id=match.id, result=change.result, note=note,
        )
        _record_outcome(profile, change.result)

    db.session.flush()
    for profile in profiles.values():
        _recompute_streaks(profile)

    logger.info(
        'Corrected rating for match %s after winner changed to %s',
        match.id, match.winner_team,
    )
    return deltas


def replay_pending_rating_updates():
    """Apply accepted competitive results whose rating never committed.

    Each result runs in its own transaction; a failure on one does not stop
    the others. Returns the number of results applied.
    """
    pending_ids = [
        row.id for row in (
            MatchResult.query
            .with_entities(MatchResult.id)
            .filter(
                MatchResult.status.in_(MatchStatus.ACCEPTED),
                MatchResult.match_type == MatchType.COMPETITIVE,
                MatchResult.elo_applied.is_(False),
            )
            .order_by(MatchResult.id)
            .all()
        )
    ]

    applied = 0
    for match_id in pending_ids:
        try:
            with atomic():
                match = lock_match_result(match_id)
                if apply_rating_update(match):
                    applied += 1
        except (ConcurrentUpdate, StorageUnavailable) as exc:
            logger.warning('Could not replay rating for match %s: %s', match_id, exc)
    return applied


def audit_ledger():
    """Return profiles whose ``elo`` disagrees with the initial rating plus the ledger sum."""
    sums = dict(
        db.session.query(EloHistoryEntry.user_id, func.sum(EloHistoryEntry.delta))
        .group_by(EloHistoryEntry.user_id)
        .all()
    )
    base = initial_elo()
    mismatches = []
    for profile in RatingProfile.query.order_by(RatingProfile.user_id).all():
        expected = base + int(sums.get(profile.user_id) or 0)
        if profile.elo != expected:
            mismatches.append({
                'user_id': profile.user_id,
                'elo': profile.elo,
                'ledger_elo': expected,
            })
    return mismatches
