"""
League standings aggregation.

Standings are a pure function of the league's members, its accepted results
inside the requested scope, its scoring rules and, for open leagues, the
members' current ratings. Each distinct computation is stored as a snapshot
so the next one can report how far every player moved.

Ordering:
- Primary key: points (scheduled leagues) or rating (open leagues)
- Then head-to-head wins among the players tied on the primary key
- Then set difference, game difference, fewer matches played
- Finally display name (case-insensitive) and user id, so no two players
  ever share a position
"""
import hashlib
import json
import logging
from collections import Counter, defaultdict, namedtuple
from datetime import time, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from courtladder.app import db
from courtladder.errors import LadderError, NotFound, ScoringRulesMissing, ValidationError
from courtladder.models import (
    League, LeagueStandingsRow, LeagueStandingsSnapshot, MatchResult, MatchStatus,
    RatingProfile,
)
from courtladder.services.match_store import atomic
from courtladder.services.rating import TEAM_A, TEAM_B
from courtladder.services.rating_engine import initial_elo
from courtladder.services.scoreline import set_and_game_totals
from courtladder.time_utils import isoformat_or_none, utcnow_naive

logger = logging.getLogger(__name__)

MODE_OPEN = 'open'
MODE_SCHEDULED = 'scheduled'
LEAGUE_MODES = (MODE_OPEN, MODE_SCHEDULED)

SCOPE_SEASON = 'season'
SCOPE_ALL = 'all'
SCOPES = (SCOPE_SEASON, SCOPE_ALL)

_REQUIRED_RULE_KEYS = ('win', 'loss')
_OPTIONAL_RULE_KEYS = ('set_won',)

StandingsResult = namedtuple(
    'StandingsResult', ['league_id', 'scope', 'rows', 'movement', 'computed_at', 'snapshot_id'],
)


def default_scope(league):
    return SCOPE_ALL if league.mode == MODE_OPEN else SCOPE_SEASON


def _rule_value(raw_value):
    if isinstance(raw_value, bool) or not isinstance(raw_value, int):
        return None
    return raw_value


def validate_scoring_rules(raw_rules):
    """Return normalized rules, or None when ``raw_rules`` is not usable."""
    if not isinstance(raw_rules, dict):
        return None
    rules = {}
    for key in _REQUIRED_RULE_KEYS:
        value = _rule_value(raw_rules.get(key))
        if value is None:
            return None
        rules[key] = value
    for key in _OPTIONAL_RULE_KEYS:
        value = _rule_value(raw_rules.get(key, 0))
        if value is None:
            return None
        rules[key] = value
    return rules


def resolve_scoring_rules(league):
    """Scheduled leagues must configure their rules; open leagues fall back to the defaults."""
    raw_rules = league.scoring_rules
    if raw_rules is None:
        if league.mode == MODE_OPEN:
            return validate_scoring_rules(current_app.config['DEFAULT_SCORING_RULES'])
        raise ScoringRulesMissing(league.id)
    rules = validate_scoring_rules(raw_rules)
    if rules is None:
        raise ScoringRulesMissing(league.id, reason='League scoring rules are malformed')
    return rules


def season_end_bound(end_date):
    """Exclusive upper bound for results played inside the season.

    A date-only end date (midnight) covers that whole day.
    """
    if end_date.time() == time.min:
        return end_date + timedelta(days=1)
    return end_date + timedelta(microseconds=1)


def _accepted_results(league, scope):
    query = MatchResult.query.filter(
        MatchResult.league_id == league.id,
        MatchResult.status.in_(MatchStatus.ACCEPTED),
    )
    if scope == SCOPE_SEASON:
        if league.start_date is not None:
            query = query.filter(MatchResult.played_at >= league.start_date)
        if league.end_date is not None:
            query = query.filter(MatchResult.played_at < season_end_bound(league.end_date))
    return query.order_by(MatchResult.id).all()


def _empty_tally():
    return {
        'points': 0,
        'wins': 0,
        'losses': 0,
        'matches_played': 0,
        'sets_won': 0,
        'sets_lost': 0,
        'games_won': 0,
        'games_lost': 0,
        'beaten': Counter(),
    }


def _tally(member_ids, results, rules):
    tallies = {user_id: _empty_tally() for user_id in member_ids}
    for match in results:
        sets = match.sets
        for player in match.players:
            tally = tallies.get(player.user_id)
            if tally is None:
                # player has since left the league
                continue
            won = player.team == match.winner_team
            sets_won, sets_lost, games_won, games_lost = set_and_game_totals(sets, player.team)
            tally['matches_played'] += 1
            tally['wins' if won else 'losses'] += 1
            tally['sets_won'] += sets_won
            tally['sets_lost'] += sets_lost
            tally['games_won'] += games_won
            tally['games_lost'] += games_lost
            tally['points'] += (rules['win'] if won else rules['loss']) + rules['set_won'] * sets_won
            if won:
                other_team = TEAM_B if player.team == TEAM_A else TEAM_A
                tally['beaten'].update(match.team_user_ids(other_team))
    return tallies


def _member_elos(member_ids):
    profiles = RatingProfile.query.filter(RatingProfile.user_id.in_(member_ids)).all()
    elos = {profile.user_id: profile.elo for profile in profiles}
    base = initial_elo()
    return {user_id: elos.get(user_id, base) for user_id in member_ids}


def _head_to_head(tallies, primary):
    """Wins each player has over the others sharing their primary value."""
    groups = defaultdict(list)
    for user_id, value in primary.items():
        groups[value].append(user_id)
    h2h = {}
    for group in groups.values():
        for user_id in group:
            beaten = tallies[user_id]['beaten']
            h2h[user_id] = sum(beaten[other] for other in group if other != user_id)
    return h2h


def _ordered_rows(league, scope, rules):
    members = {member.user_id: member.user for member in league.members}
    member_ids = sorted(members)
    tallies = _tally(member_ids, _accepted_results(league, scope), rules)
    elos = _member_elos(member_ids)

    if league.mode == MODE_OPEN:
        primary = elos
    else:
        primary = {user_id: tallies[user_id]['points'] for user_id in member_ids}
    h2h = _head_to_head(tallies, primary)

    def sort_key(user_id):
        tally = tallies[user_id]
        user = members[user_id]
        name = (user.label if user else '') or ''
        return (
            -primary[user_id],
            -h2h[user_id],
            -(tally['sets_won'] - tally['sets_lost']),
            -(tally['games_won'] - tally['games_lost']),
            tally['matches_played'],
            name.casefold(),
            user_id,
        )

    rows = []
    for position, user_id in enumerate(sorted(member_ids, key=sort_key), 1):
        tally = tallies[user_id]
        rows.append({
            'user_id': user_id,
            'position': position,
            'points': tally['points'],
            'elo': elos[user_id],
            'wins': tally['wins'],
            'losses': tally['losses'],
            'matches_played': tally['matches_played'],
            'sets_won': tally['sets_won'],
            'sets_lost': tally['sets_lost'],
            'games_won': tally['games_won'],
            'games_lost': tally['games_lost'],
        })
    return rows


def _fingerprint(league, rows):
    """Hash of everything that decides the table.

    Scheduled leagues rank on points, so a rating change from outside the
    league must not start a new snapshot.
    """
    if league.mode != MODE_OPEN:
        rows = [{key: value for key, value in row.items() if key != 'elo'} for row in rows]
    payload = json.dumps(rows, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def _latest_snapshot(league_id, scope):
    return (
        LeagueStandingsSnapshot.query
        .filter_by(league_id=league_id, scope=scope)
        .order_by(LeagueStandingsSnapshot.id.desc())
        .first()
    )


def _result_from_snapshot(snapshot):
    rows = [row.to_dict() for row in snapshot.rows]
    movement = {
        str(row.user_id): row.position_delta
        for row in snapshot.rows
        if row.position_delta is not None
    }
    return StandingsResult(
        league_id=snapshot.league_id,
        scope=snapshot.scope,
        rows=rows,
        movement=movement,
        computed_at=isoformat_or_none(snapshot.computed_at),
        snapshot_id=snapshot.id,
    )


def compute_standings(league_id, scope=None):
    """Compute the league table and persist it as the newest snapshot.

    When nothing that affects the table changed since the latest snapshot,
    that snapshot is returned as-is so movement stays stable across reads.
    """
    league = db.session.get(League, league_id)
    if not league:
        raise NotFound('League not found')
    scope = scope or default_scope(league)
    if scope not in SCOPES:
        raise ValidationError('Invalid standings scope', allowed=list(SCOPES))

    rules = resolve_scoring_rules(league)
    rows = _ordered_rows(league, scope, rules)
    fingerprint = _fingerprint(league, rows)

    latest = _latest_snapshot(league.id, scope)
    if latest is not None and latest.fingerprint == fingerprint:
        result = _result_from_snapshot(latest)
        live_elos = {data['user_id']: data['elo'] for data in rows}
        for row in result.rows:
            row['elo'] = live_elos[row['user_id']]
        return result

    previous_positions = {}
    if latest is not None:
        previous_positions = {row.user_id: row.position for row in latest.rows}

    with atomic():
        snapshot = LeagueStandingsSnapshot(
            league_id=league.id,
            scope=scope,
            fingerprint=fingerprint,
            computed_at=utcnow_naive(),
        )
        for data in rows:
            previous = previous_positions.get(data['user_id'])
            snapshot.rows.append(LeagueStandingsRow(
                league_id=league.id,
                position_delta=None if previous is None else previous - data['position'],
                **data
            ))
        db.session.add(snapshot)

    logger.info(
        'Standings for league %s (%s) recomputed: %s players, snapshot %s',
        league.id, scope, len(rows), snapshot.id,
    )
    return _result_from_snapshot(snapshot)


def refresh_league_standings_quietly(league_id):
    """Recompute after a league result was accepted.

    The result transition already committed, so a standings failure is logged
    and left for the next read or the maintenance job to repair.
    """
    if not current_app.config.get('STANDINGS_REFRESH_ON_RESULT', True):
        return None
    try:
        return compute_standings(league_id)
    except LadderError as exc:
        logger.warning('Standings for league %s not refreshed: %s', league_id, exc.message)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('Standings for league %s not refreshed', league_id)
    return None


def recompute_all_standings():
    """Recompute every league in its default scope; one league failing does not stop the rest."""
    summary = {'computed': [], 'failed': {}}
    for league in League.query.order_by(League.id).all():
        try:
            compute_standings(league.id)
        except LadderError as exc:
            logger.warning('League %s skipped: %s', league.id, exc.message)
            summary['failed'][league.id] = exc.code
            continue
        summary['computed'].append(league.id)
    return summary
