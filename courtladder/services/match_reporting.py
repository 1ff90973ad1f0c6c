"""Producer side of the lifecycle: a participant reports a finished match."""
import logging
from datetime import timedelta

from courtladder.app import db
from courtladder.errors import (
    Conflict, Forbidden, LeagueMembersMissing, NotFound, ValidationError,
)
from courtladder.models import (
    League, MatchResult, MatchResultPlayer, MatchStatus, MatchType, User,
)
from courtladder.services.match_store import atomic, record_event
from courtladder.services.rating import TEAM_A, TEAM_B
from courtladder.services.scoreline import parse_and_validate
from courtladder.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

ALLOWED_SOURCES = ('reservation', 'manual', 'challenge', 'league')
_MAX_TEAM_SIZE = 2
# Client clocks drift; a result a few minutes "in the future" is still accepted.
_PLAYED_AT_SKEW = timedelta(minutes=10)


def _validate_teams(team_a_ids, team_b_ids):
    if not team_a_ids or not team_b_ids:
        raise ValidationError('Both teams must have players')
    if len(team_a_ids) > _MAX_TEAM_SIZE or len(team_b_ids) > _MAX_TEAM_SIZE:
        raise ValidationError(f'A team has at most {_MAX_TEAM_SIZE} players')
    if len(team_a_ids) != len(team_b_ids):
        raise ValidationError('Both teams must have the same number of players')
    all_ids = list(team_a_ids) + list(team_b_ids)
    if len(set(all_ids)) != len(all_ids):
        raise ValidationError('Duplicate players across teams')


def _require_users(user_ids):
    found = {
        user.id for user in User.query.filter(User.id.in_(user_ids)).all()
    }
    if found != set(user_ids):
        raise NotFound('One or more players not found', missing_user_ids=sorted(set(user_ids) - found))


def _require_league_members(league_id, user_ids):
    league = db.session.get(League, league_id)
    if not league:
        raise NotFound('League not found')
    member_ids = {member.user_id for member in league.members}
    missing = set(user_ids) - member_ids
    if missing:
        raise LeagueMembersMissing(missing)
    return league


def _existing_for_challenge(challenge_id):
    return (
        MatchResult.query
        .filter(
            MatchResult.challenge_id == challenge_id,
            MatchResult.status != MatchStatus.REJECTED,
        )
        .order_by(MatchResult.id.desc())
        .first()
    )


def report_match_result(reporter, team_a_ids, team_b_ids, raw_sets,
                        match_type=MatchType.COMPETITIVE, source='manual',
                        league_id=None, played_at=None,
                        challenge_id=None, reservation_id=None):
    """Create a result in ``pending_confirm``.

    Returns ``(match, replayed)``. Reporting the same scoreline again for a
    challenge that already has a live result returns that result.
    """
    _validate_teams(team_a_ids, team_b_ids)
    all_ids = list(team_a_ids) + list(team_b_ids)
    if reporter.id not in all_ids:
        raise Forbidden('You can only report matches you played in')

    match_type = str(match_type or MatchType.COMPETITIVE).strip().upper()
    if match_type not in MatchType.ALL:
        raise ValidationError('Invalid match type', allowed=list(MatchType.ALL))
    source = str(source or 'manual').strip().lower()
    if source not in ALLOWED_SOURCES:
        raise ValidationError('Invalid source', allowed=list(ALLOWED_SOURCES))

    sets, winner = parse_and_validate(raw_sets)

    now = utcnow_naive()
    if played_at is None:
        played_at = now
    elif played_at > now + _PLAYED_AT_SKEW:
        raise ValidationError('played_at cannot be in the future')

    _require_users(all_ids)
    if league_id is not None:
        _require_league_members(league_id, all_ids)

    if challenge_id is not None:
        existing = _existing_for_challenge(challenge_id)
        if existing is not None:
            if existing.reported_by_user_id == reporter.id and existing.sets == sets:
                logger.info(
                    'Challenge %s already has result %s, returning it',
                    challenge_id, existing.id,
                )
                return existing, True
            raise Conflict(
                'A result was already reported for this challenge',
                match_id=existing.id,
            )

    with atomic():
        match = MatchResult(
            league_id=league_id,
            challenge_id=challenge_id,
            reservation_id=reservation_id,
            match_type=match_type,
            source=source,
            status=MatchStatus.PENDING_CONFIRM,
            winner_team=winner,
            reported_by_user_id=reporter.id,
            played_at=played_at,
        )
        match.sets = sets
        db.session.add(match)
        for team, user_ids in ((TEAM_A, team_a_ids), (TEAM_B, team_b_ids)):
            for user_id in user_ids:
                match.players.append(MatchResultPlayer(user_id=user_id, team=team))
        db.session.flush()
        record_event(match, reporter.id, 'reported', None)

    logger.info(
        'User %s reported %s match %s (%s), winner %s',
        reporter.id, match_type.lower(), match.id, match.score_label(), winner,
    )
    return match, False
