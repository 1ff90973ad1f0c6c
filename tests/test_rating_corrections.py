"""Tests for admin corrections of rated results and the rating replay job."""
import json

from courtladder.app import db
from courtladder.models import EloHistoryEntry, MatchResult, RatingProfile
from courtladder.services.rating_engine import audit_ledger, replay_pending_rating_updates


def _report(client, headers, team_a, team_b, sets):
    res = client.post('/api/matches', json={
        'team_a': team_a, 'team_b': team_b, 'sets': sets,
    }, headers=headers)
    assert res.status_code == 201
    return json.loads(res.data)['match']['id']


def _profile(user_id):
    return RatingProfile.query.filter_by(user_id=user_id).first()


def _reasons(user_id, match_id):
    entries = (
        EloHistoryEntry.query
        .filter_by(user_id=user_id, match_result_id=match_id)
        .order_by(EloHistoryEntry.id)
        .all()
    )
    return [(entry.reason, entry.delta) for entry in entries]


def test_overturned_winner_gets_compensating_entries(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    _, admin_headers = make_player('admin', is_admin=True)
    match_id = _report(client, a1_headers, [a1], [b1], [{'a': 6, 'b': 4}, {'a': 6, 'b': 4}])
    assert client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers).status_code == 200
    assert client.post(f'/api/matches/{match_id}/dispute', json={
        'reason': 'wrong_winner',
    }, headers=b1_headers).status_code == 200

    res = client.post(f'/api/matches/{match_id}/resolve', json={
        'sets': [{'a': 4, 'b': 6}, {'a': 4, 'b': 6}],
        'note': 'Scores were entered for the wrong side',
    }, headers=admin_headers)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['match']['status'] == 'resolved'
    assert data['match']['winner_team'] == 'B'
    assert data['match']['resolution_note'] == 'Scores were entered for the wrong side'
    assert {c['user_id']: c['delta'] for c in data['elo_changes']} == {a1: -16, b1: 16}

    assert _reasons(a1, match_id) == [
        ('match_result', 16), ('match_reversal', -16), ('resolution_result', -16),
    ]
    assert _reasons(b1, match_id) == [
        ('match_result', -16), ('match_reversal', 16), ('resolution_result', 16),
    ]

    loser = _profile(a1)
    winner = _profile(b1)
    assert (loser.elo, loser.wins, loser.losses, loser.matches_played) == (1184, 0, 1, 1)
    assert (winner.elo, winner.wins, winner.losses, winner.matches_played) == (1216, 1, 0, 1)
    assert loser.win_streak_current == 0
    assert winner.win_streak_current == 1
    assert audit_ledger() == []

    history = client.get('/api/me/competitive-profile', headers=a1_headers)
    assert json.loads(history.data)['profile']['last10'] == ['L']


def test_correction_keeping_the_winner_does_not_touch_ratings(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    _, admin_headers = make_player('admin', is_admin=True)
    match_id = _report(client, a1_headers, [a1], [b1], [{'a': 6, 'b': 4}, {'a': 6, 'b': 4}])
    client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers)
    client.post(f'/api/matches/{match_id}/dispute', json={'reason': 'wrong_score'}, headers=b1_headers)

    res = client.post(f'/api/matches/{match_id}/resolve', json={
        'sets': [{'a': 6, 'b': 4}, {'a': 7, 'b': 5}],
    }, headers=admin_headers)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['match']['score'] == '6-4, 7-5'
    assert data['elo_changes'] == []
    assert _reasons(a1, match_id) == [('match_result', 16)]

    replay = client.post(f'/api/matches/{match_id}/resolve', json={
        'sets': [{'a': 6, 'b': 4}, {'a': 7, 'b': 5}],
    }, headers=admin_headers)
    assert json.loads(replay.data)['replayed'] is True

    different = client.post(f'/api/matches/{match_id}/resolve', json={
        'sets': [{'a': 6, 'b': 0}, {'a': 6, 'b': 0}],
    }, headers=admin_headers)
    assert different.status_code == 409


def test_correction_of_unrated_result_applies_rating_once(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    _, admin_headers = make_player('admin', is_admin=True)
    match_id = _report(client, a1_headers, [a1], [b1], [{'a': 6, 'b': 4}, {'a': 6, 'b': 4}])
    client.post(f'/api/matches/{match_id}/dispute', json={'reason': 'wrong_winner'}, headers=b1_headers)

    res = client.post(f'/api/matches/{match_id}/resolve', json={
        'sets': [{'a': 4, 'b': 6}, {'a': 6, 'b': 3}, {'a': 8, 'b': 10}],
    }, headers=admin_headers)
    assert res.status_code == 200
    assert _reasons(b1, match_id) == [('match_result', 16)]
    assert _profile(a1).elo == 1184


def test_correction_rejects_invalid_scoreline(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    _, admin_headers = make_player('admin', is_admin=True)
    match_id = _report(client, a1_headers, [a1], [b1], [{'a': 6, 'b': 4}, {'a': 6, 'b': 4}])

    res = client.post(f'/api/matches/{match_id}/resolve', json={
        'sets': [{'a': 6, 'b': 4}],
    }, headers=admin_headers)
    assert res.status_code == 400
    assert json.loads(res.data)['code'] == 'INVALID_SCORELINE'

    not_admin = client.post(f'/api/matches/{match_id}/resolve', json={
        'sets': [{'a': 4, 'b': 6}, {'a': 4, 'b': 6}],
    }, headers=b1_headers)
    assert not_admin.status_code == 403


def test_replay_applies_accepted_results_missing_their_rating(app, client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    match_id = _report(client, a1_headers, [a1], [b1], [{'a': 6, 'b': 1}, {'a': 6, 'b': 1}])

    # simulate a confirmation whose rating write never committed
    match = db.session.get(MatchResult, match_id)
    match.status = 'confirmed'
    db.session.commit()
    assert EloHistoryEntry.query.count() == 0

    assert replay_pending_rating_updates() == 1
    assert _profile(a1).elo == 1216
    assert replay_pending_rating_updates() == 0
    assert EloHistoryEntry.query.count() == 2
