"""Scoreline parsing and validation for best-of-three set matches."""
from courtladder.errors import InvalidScoreline
from courtladder.services.rating import TEAM_A, TEAM_B

_MIN_SETS = 2
_MAX_SETS = 3
_SETS_TO_WIN = 2
_MATCH_TIEBREAK_POINTS = 10


def _coerce_games(raw_value):
    if isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, float) and not raw_value.is_integer():
        return None
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        return None
    return value if value >= 0 else None


def parse_sets(raw_sets):
    """Accept ``[{"a": 6, "b": 4}, ...]`` or ``[[6, 4], ...]`` and return tuples."""
    if not isinstance(raw_sets, list):
        raise InvalidScoreline('Sets must be a list')
    parsed = []
    for index, raw in enumerate(raw_sets, 1):
        if isinstance(raw, dict):
            pair = (raw.get('a'), raw.get('b'))
        elif isinstance(raw, (list, tuple)) and len(raw) == 2:
            pair = tuple(raw)
        else:
            raise InvalidScoreline(f'Set {index} must have games for team A and team B')
        team_a_games = _coerce_games(pair[0])
        team_b_games = _coerce_games(pair[1])
        if team_a_games is None or team_b_games is None:
            raise InvalidScoreline(f'Set {index} games must be non-negative integers')
        parsed.append((team_a_games, team_b_games))
    return parsed


def _is_regular_set(winner_games, loser_games):
    if winner_games == 6:
        return loser_games <= 4
    if winner_games == 7:
        return loser_games in (5, 6)
    return False


def _is_match_tiebreak(winner_games, loser_games):
    if winner_games < _MATCH_TIEBREAK_POINTS or winner_games - loser_games < 2:
        return False
    return winner_games == _MATCH_TIEBREAK_POINTS or winner_games - loser_games == 2


def validate_sets(sets):
    """Check a parsed scoreline and return the winning team ('A' or 'B').

    Sets one and two are regular sets (6-0..6-4, 7-5, 7-6). A deciding third
    set may be a regular set or a match tie-break to 10 with a two point lead.
    """
    if not _MIN_SETS <= len(sets) <= _MAX_SETS:
        raise InvalidScoreline('A match has 2 or 3 sets')

    sets_won = {TEAM_A: 0, TEAM_B: 0}
    for index, (team_a_games, team_b_games) in enumerate(sets, 1):
        if team_a_games == team_b_games:
            raise InvalidScoreline(f'Set {index} cannot be tied')
        if sets_won[TEAM_A] == _SETS_TO_WIN or sets_won[TEAM_B] == _SETS_TO_WIN:
            raise InvalidScoreline('The match was already decided before the third set')

        winner_games = max(team_a_games, team_b_games)
        loser_games = min(team_a_games, team_b_games)
        deciding_set = index == _MAX_SETS
        if not _is_regular_set(winner_games, loser_games) and not (
            deciding_set and _is_match_tiebreak(winner_games, loser_games)
        ):
            raise InvalidScoreline(f'Set {index} score {team_a_games}-{team_b_games} is not valid')

        sets_won[TEAM_A if team_a_games > team_b_games else TEAM_B] += 1

    if sets_won[TEAM_A] == _SETS_TO_WIN:
        return TEAM_A
    if sets_won[TEAM_B] == _SETS_TO_WIN:
        return TEAM_B
    raise InvalidScoreline('Sets are split, a deciding third set is required')


def parse_and_validate(raw_sets):
    sets = parse_sets(raw_sets)
    return sets, validate_sets(sets)


def set_and_game_totals(sets, team):
    """Return (sets_won, sets_lost, games_won, games_lost) for ``team``."""
    sets_won = sets_lost = games_won = games_lost = 0
    for team_a_games, team_b_games in sets:
        own, other = (
            (team_a_games, team_b_games) if team == TEAM_A else (team_b_games, team_a_games)
        )
        games_won += own
        games_lost += other
        if own > other:
            sets_won += 1
        else:
            sets_lost += 1
    return sets_won, sets_lost, games_won, games_lost
