"""
ELO rating model for the competitive ladder. Pure functions, no I/O.

Key design decisions:
- Start: ELO_INITIAL (1200 by default), or the floor of the category picked during onboarding.
- K-factor: one value per deployment (ELO_K_FACTOR, 32 by default), so both
  sides of a match always move by the same amount.
- Doubles: uses team average ELO for the expected score calculation.
  Every player on a team gains/loses the team's delta.
- No score-margin bonus: a 6-0 6-0 and a 7-6 7-6 win are rated the same.
- Clamp: the winning side moves by at least ELO_MIN_DELTA and at most
  ELO_MAX_DELTA points.
- Formula: E = 1 / (1 + 10^((opp_avg - team_avg) / 400))
           ΔR = round(K * (actual - expected))
"""
import math
from collections import namedtuple

# (category, lowest ELO in the band); category 1 is the strongest band.
CATEGORY_FLOORS = (
    (1, 1800),
    (2, 1650),
    (3, 1500),
    (4, 1350),
    (5, 1200),
    (6, 1050),
    (7, 900),
)
LOWEST_CATEGORY = 8
LOWEST_CATEGORY_STARTING_ELO = 800

TEAM_A = 'A'
TEAM_B = 'B'

RatingDelta = namedtuple(
    'RatingDelta', ['user_id', 'team', 'elo_before', 'elo_after', 'delta', 'result'],
)


def expected_score(team_elo, opponent_elo):
    """Calculate the expected score (win probability) for a team.

    Uses the standard ELO expected score formula:
    E = 1 / (1 + 10^((opponent - team) / 400))
    """
    return 1.0 / (1.0 + math.pow(10, (opponent_elo - team_elo) / 400.0))


def team_rating(elos):
    """Average rating of a side; a singles side is just the player's rating."""
    elos = list(elos)
    if not elos:
        raise ValueError('A team needs at least one rated player')
    return sum(elos) / len(elos)


def winner_delta(winner_elo, loser_elo, k_factor, min_delta=1, max_delta=None):
    """Points gained by the winning side (and lost by the losing side)."""
    change = round(k_factor * (1.0 - expected_score(winner_elo, loser_elo)))
    if max_delta is not None:
        change = min(change, max_delta)
    return max(change, min_delta)


def category_for_elo(elo):
    """Map a rating to its category band (1 strongest .. 8). Monotonic in ``elo``."""
    for category, floor in CATEGORY_FLOORS:
        if elo >= floor:
            return category
    return LOWEST_CATEGORY


def starting_elo_for_category(category):
    """ELO assigned to a player who picks ``category`` during onboarding."""
    for band, floor in CATEGORY_FLOORS:
        if band == category:
            return floor
    if category == LOWEST_CATEGORY:
        return LOWEST_CATEGORY_STARTING_ELO
    raise ValueError(f'Unknown category {category!r}')


def calculate_rating_deltas(team_a, team_b, winner_team, k_factor,
                            min_delta=1, max_delta=None):
    """Calculate ELO changes for all players in a match.

    Args:
        team_a: List of (user_id, elo) pairs for team A.
        team_b: List of (user_id, elo) pairs for team B.
        winner_team: 'A' or 'B'.
        k_factor: K used for this match.

    Returns:
        List of RatingDelta, team A players first. Deltas sum to zero
        whenever both teams have the same number of players.
    """
    if winner_team not in (TEAM_A, TEAM_B):
        raise ValueError(f'winner_team must be A or B, got {winner_team!r}')

    team_a_avg = team_rating(elo for _, elo in team_a)
    team_b_avg = team_rating(elo for _, elo in team_b)

    if winner_team == TEAM_A:
        change = winner_delta(team_a_avg, team_b_avg, k_factor, min_delta, max_delta)
    else:
        change = winner_delta(team_b_avg, team_a_avg, k_factor, min_delta, max_delta)

    deltas = []
    for team_name, players in ((TEAM_A, team_a), (TEAM_B, team_b)):
        won = team_name == winner_team
        signed = change if won else -change
        for user_id, elo in players:
            deltas.append(RatingDelta(
                user_id=user_id,
                team=team_name,
                elo_before=elo,
                elo_after=elo + signed,
                delta=signed,
                result='win' if won else 'loss',
            ))
    return deltas
