"""
Confirmation state machine for reported match results.

    pending_confirm --confirm--> confirmed
    pending_confirm --reject---> rejected
    pending_confirm --dispute--> disputed
    confirmed       --dispute--> disputed
    pending_confirm, disputed --resolve (admin)--> resolved

Every transition runs in one transaction with the result row locked. A
transition that already produced the current state with the same actor is a
replay: it returns the result untouched with ``replayed=True``.
"""
import logging
from collections import namedtuple

from courtladder.errors import Conflict, Forbidden, ValidationError
from courtladder.models import MatchStatus
from courtladder.services.match_store import (
    ConcurrentUpdate, atomic, lock_match_result, record_event,
)
from courtladder.services.rating_engine import apply_rating_update, apply_winner_correction
from courtladder.services.scoreline import parse_and_validate

logger = logging.getLogger(__name__)

REPLAY_CODE = 'ALREADY_APPLIED'
DISPUTE_REASONS = ('wrong_score', 'wrong_winner', 'match_not_played', 'other')
LEAGUE_RESOLVER_ROLES = ('owner', 'admin')

_MAX_ATTEMPTS = 2
_MAX_REASON_LENGTH = 500
_MAX_MESSAGE_LENGTH = 1000

TransitionOutcome = namedtuple('TransitionOutcome', ['match', 'replayed', 'deltas'])


def _clean_text(raw_value, max_length, field):
    text = str(raw_value or '').strip()
    if len(text) > max_length:
        raise ValidationError(f'{field} must be at most {max_length} characters')
    return text or None


def _require_participant(match, actor):
    if actor.id not in match.participant_ids:
        raise Forbidden('You are not a player in this match')


def _require_not_reporter(match, actor, verb):
    if actor.id == match.reported_by_user_id:
        raise Forbidden(f'The player who reported this result cannot {verb} it')


def can_resolve(match, actor):
    """Platform admins resolve anything; league owners/admins resolve their league's results."""
    if getattr(actor, 'is_admin', False):
        return True
    if match.league is None:
        return False
    return match.league.member_role(actor.id) in LEAGUE_RESOLVER_ROLES


def _require_resolver(match, actor):
    if not can_resolve(match, actor):
        raise Forbidden('Only a league admin or a platform admin can resolve this result')


def _illegal(match, verb):
    return Conflict(
        f'This result is {match.status.replace("_", " ")} and cannot be {verb}',
        status=match.status,
    )


def _run(match_id, actor, action, transition):
    """Run ``transition(match, actor)`` under a row lock, re-reading once on a lost race."""
    for attempt in range(1, _MAX_ATTEMPTS + 1):
        try:
            with atomic():
                match = lock_match_result(match_id)
                outcome = transition(match, actor)
        except ConcurrentUpdate as exc:
            logger.warning(
                'Match %s changed during %s by user %s (attempt %s): %s',
                match_id, action, actor.id, attempt, exc,
            )
            continue

        if outcome.replayed:
            logger.warning('Replayed %s on match %s by user %s', action, match_id, actor.id)
        else:
            logger.info(
                'Match %s %s by user %s, now %s',
                match_id, action, actor.id, outcome.match.status,
            )
        return outcome

    raise ConcurrentUpdate()


def confirm(match_id, actor):
    """Opponent accepts the reported result; competitive results are rated once."""
    def transition(match, actor):
        _require_participant(match, actor)
        _require_not_reporter(match, actor, 'confirm')
        if match.status == MatchStatus.CONFIRMED and match.confirmed_by_user_id == actor.id:
            return TransitionOutcome(match, True, [])
        if match.status != MatchStatus.PENDING_CONFIRM:
            raise _illegal(match, 'confirmed')

        previous = match.status
        match.status = MatchStatus.CONFIRMED
        match.confirmed_by_user_id = actor.id
        record_event(match, actor.id, 'confirmed', previous)
        deltas = apply_rating_update(match) if match.is_competitive else []
        return TransitionOutcome(match, False, deltas)

    return _run(match_id, actor, 'confirm', transition)


def reject(match_id, actor, reason=None):
    """Opponent rejects the reported result. Never touches ratings."""
    reason = _clean_text(reason, _MAX_REASON_LENGTH, 'Reason')

    def transition(match, actor):
        _require_participant(match, actor)
        _require_not_reporter(match, actor, 'reject')
        if match.status == MatchStatus.REJECTED and match.rejected_by_user_id == actor.id:
            return TransitionOutcome(match, True, [])
        if match.status != MatchStatus.PENDING_CONFIRM:
            raise _illegal(match, 'rejected')

        previous = match.status
        match.status = MatchStatus.REJECTED
        match.rejected_by_user_id = actor.id
        match.rejection_reason = reason
        record_event(match, actor.id, 'rejected', previous, reason=reason)
        return TransitionOutcome(match, False, [])

    return _run(match_id, actor, 'reject', transition)


def dispute(match_id, actor, reason, message=None):
    """Any participant flags the result for an admin.

    A rating that was already applied stays applied until an admin corrects
    the result.
    """
    reason = str(reason or '').strip().lower()
    if reason not in DISPUTE_REASONS:
        raise ValidationError(
            'Choose a dispute reason', allowed_reasons=list(DISPUTE_REASONS),
        )
    message = _clean_text(message, _MAX_MESSAGE_LENGTH, 'Message')

    def transition(match, actor):
        _require_participant(match, actor)
        if match.status == MatchStatus.DISPUTED and match.disputed_by_user_id == actor.id:
            return TransitionOutcome(match, True, [])
        if match.status not in (MatchStatus.PENDING_CONFIRM, MatchStatus.CONFIRMED):
            raise _illegal(match, 'disputed')

        previous = match.status
        match.status = MatchStatus.DISPUTED
        match.disputed_by_user_id = actor.id
        match.dispute_reason = reason
        match.dispute_message = message
        record_event(match, actor.id, 'disputed', previous, reason=reason, message=message)
        return TransitionOutcome(match, False, [])

    return _run(match_id, actor, 'dispute', transition)


def resolve_confirm_as_is(match_id, actor):
    """Admin accepts the reported scoreline of a disputed or stuck result."""
    def transition(match, actor):
        _require_resolver(match, actor)
        if match.status == MatchStatus.RESOLVED:
            return TransitionOutcome(match, True, [])
        if match.status not in (MatchStatus.PENDING_CONFIRM, MatchStatus.DISPUTED):
            raise _illegal(match, 'resolved')

        previous = match.status
        match.status = MatchStatus.RESOLVED
        match.resolved_by_user_id = actor.id
        record_event(match, actor.id, 'resolved', previous)
        deltas = []
        if match.is_competitive and not match.elo_applied:
            deltas = apply_rating_update(match)
        return TransitionOutcome(match, False, deltas)

    return _run(match_id, actor, 'resolve', transition)


def resolve_with_correction(match_id, actor, raw_sets, note=None):
    """Admin replaces the scoreline and resolves the result.

    If the original result was already rated and the winner flips, the ledger
    gets compensating entries; history is never rewritten.
    """
    sets, winner = parse_and_validate(raw_sets)
    note = _clean_text(note, _MAX_MESSAGE_LENGTH, 'Note')

    def transition(match, actor):
        _require_resolver(match, actor)
        if match.status == MatchStatus.RESOLVED:
            if match.sets == sets:
                return TransitionOutcome(match, True, [])
            raise _illegal(match, 'corrected')
        if match.status not in (MatchStatus.PENDING_CONFIRM, MatchStatus.DISPUTED):
            raise _illegal(match, 'corrected')

        previous = match.status
        previous_winner = match.winner_team
        match.sets = sets
        match.winner_team = winner
        match.status = MatchStatus.RESOLVED
        match.resolved_by_user_id = actor.id
        match.resolution_note = note
        record_event(match, actor.id, 'overridden', previous, reason=note)

        deltas = []
        if match.is_competitive:
            if not match.elo_applied:
                deltas = apply_rating_update(match)
            elif winner != previous_winner:
                deltas = apply_winner_correction(match, note=note)
        return TransitionOutcome(match, False, deltas)

    return _run(match_id, actor, 'correct', transition)
