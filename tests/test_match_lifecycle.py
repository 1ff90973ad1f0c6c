"""Tests for reporting results and the confirmation lifecycle."""
import json
import threading

import pytest

from courtladder.app import create_app, db
from courtladder.auth_utils import generate_token
from courtladder.config import TestingConfig
from courtladder.models import EloHistoryEntry, MatchResult, MatchResultEvent, RatingProfile, User
from courtladder.services import match_lifecycle, rating_engine
from courtladder.services.match_store import get_match_result
from courtladder.services.rating_engine import apply_rating_update, audit_ledger

STRAIGHT_SETS = [{'a': 6, 'b': 4}, {'a': 6, 'b': 3}]


def _report(client, headers, team_a, team_b, sets=None, **extra):
    payload = {'team_a': team_a, 'team_b': team_b, 'sets': sets or STRAIGHT_SETS}
    payload.update(extra)
    return client.post('/api/matches', json=payload, headers=headers)


def _reported_match_id(client, headers, team_a, team_b, **extra):
    res = _report(client, headers, team_a, team_b, **extra)
    assert res.status_code == 201
    return json.loads(res.data)['match']['id']


def _elo(user_id):
    profile = RatingProfile.query.filter_by(user_id=user_id).first()
    return profile.elo if profile else None


def _ledger(user_id):
    return EloHistoryEntry.query.filter_by(user_id=user_id).order_by(EloHistoryEntry.id).all()


def test_report_creates_pending_result_with_audit_event(client, make_player):
    a1, a1_headers = make_player()
    b1, _ = make_player()

    res = _report(client, a1_headers, [a1], [b1])
    assert res.status_code == 201
    match = json.loads(res.data)['match']
    assert match['status'] == 'pending_confirm'
    assert match['winner_team'] == 'A'
    assert match['score'] == '6-4, 6-3'
    assert match['viewer_role'] == 'reporter'
    assert match['impact_ranking'] is True
    assert [p['user_id'] for p in match['team_b']] == [b1]
    assert [e['action'] for e in match['events']] == ['reported']


def test_report_requires_authentication(client, make_player):
    a1, _ = make_player()
    b1, _ = make_player()
    res = _report(client, {}, [a1], [b1])
    assert res.status_code == 401
    assert json.loads(res.data)['code'] == 'AUTH_REQUIRED'


def test_report_rejects_invalid_scoreline(client, make_player):
    a1, a1_headers = make_player()
    b1, _ = make_player()
    res = _report(client, a1_headers, [a1], [b1], sets=[{'a': 6, 'b': 4}, {'a': 3, 'b': 6}])
    assert res.status_code == 400
    assert json.loads(res.data)['code'] == 'INVALID_SCORELINE'
    assert MatchResult.query.count() == 0


def test_report_validates_teams(client, make_player):
    a1, a1_headers = make_player()
    a2, _ = make_player()
    b1, _ = make_player()
    outsider, outsider_headers = make_player()

    uneven = _report(client, a1_headers, [a1, a2], [b1])
    assert uneven.status_code == 400
    assert json.loads(uneven.data)['code'] == 'VALIDATION_ERROR'

    duplicate = _report(client, a1_headers, [a1], [a1])
    assert duplicate.status_code == 400

    not_playing = _report(client, outsider_headers, [a1], [b1])
    assert not_playing.status_code == 403
    assert json.loads(not_playing.data)['code'] == 'FORBIDDEN'

    unknown = _report(client, a1_headers, [a1], [9999])
    assert unknown.status_code == 404


def test_league_result_requires_every_player_to_be_a_member(client, make_player):
    a1, a1_headers = make_player()
    b1, _ = make_player()
    league = client.post('/api/leagues', json={
        'name': 'Winter Ladder',
        'mode': 'scheduled',
        'scoring_rules': {'win': 3, 'loss': 0},
    }, headers=a1_headers)
    assert league.status_code == 201
    league_id = json.loads(league.data)['league']['id']

    res = _report(client, a1_headers, [a1], [b1], league_id=league_id, source='league')
    assert res.status_code == 400
    data = json.loads(res.data)
    assert data['code'] == 'LEAGUE_MEMBERS_MISSING'
    assert data['missing_user_ids'] == [b1]


def test_confirm_applies_rating_once_and_replays(client, make_player):
    """A reports a 6-4 6-3 win over B, B confirms, then B's client retries."""
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    match_id = _reported_match_id(client, a1_headers, [a1], [b1])

    first = client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers)
    assert first.status_code == 200
    data = json.loads(first.data)
    assert data['replayed'] is False
    assert data['match']['status'] == 'confirmed'
    assert data['match']['elo_applied'] is True
    assert {c['user_id']: c['delta'] for c in data['elo_changes']} == {a1: 16, b1: -16}
    assert _elo(a1) == 1216
    assert _elo(b1) == 1184

    second = client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers)
    assert second.status_code == 200
    replay = json.loads(second.data)
    assert replay['replayed'] is True
    assert replay['code'] == 'ALREADY_APPLIED'
    assert replay['elo_changes'] == []
    assert _elo(a1) == 1216
    assert _elo(b1) == 1184
    assert len(_ledger(a1)) == 1
    assert len(_ledger(b1)) == 1

    winner = RatingProfile.query.filter_by(user_id=a1).first()
    assert (winner.wins, winner.losses, winner.matches_played) == (1, 0, 1)
    assert winner.win_streak_current == 1
    assert winner.category_locked is True


def test_rating_engine_skips_result_that_was_already_applied(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    match_id = _reported_match_id(client, a1_headers, [a1], [b1])
    assert client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers).status_code == 200

    match = get_match_result(match_id)
    assert apply_rating_update(match) == []
    db.session.commit()
    assert EloHistoryEntry.query.filter_by(match_result_id=match_id).count() == 2
    assert _elo(a1) == 1216


def test_reporter_cannot_confirm_or_reject_own_result(client, make_player):
    a1, a1_headers = make_player()
    b1, _ = make_player()
    match_id = _reported_match_id(client, a1_headers, [a1], [b1])

    confirm = client.post(f'/api/matches/{match_id}/confirm', headers=a1_headers)
    assert confirm.status_code == 403
    assert json.loads(confirm.data)['code'] == 'FORBIDDEN'

    reject = client.post(f'/api/matches/{match_id}/reject', headers=a1_headers)
    assert reject.status_code == 403

    assert get_match_result(match_id).status == 'pending_confirm'
    assert _ledger(a1) == []


def test_non_participant_cannot_act_on_result(client, make_player):
    a1, a1_headers = make_player()
    b1, _ = make_player()
    _, outsider_headers = make_player()
    match_id = _reported_match_id(client, a1_headers, [a1], [b1])

    for action, payload in (
        ('confirm', None),
        ('reject', {'reason': 'never happened'}),
        ('dispute', {'reason': 'other'}),
    ):
        res = client.post(f'/api/matches/{match_id}/{action}', json=payload, headers=outsider_headers)
        assert res.status_code == 403, action


def test_rejected_result_cannot_be_confirmed(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    match_id = _reported_match_id(client, a1_headers, [a1], [b1])

    reject = client.post(f'/api/matches/{match_id}/reject', json={
        'reason': 'Score was 6-4 4-6 10-7',
    }, headers=b1_headers)
    assert reject.status_code == 200
    rejected = json.loads(reject.data)['match']
    assert rejected['status'] == 'rejected'
    assert rejected['rejection_reason'] == 'Score was 6-4 4-6 10-7'
    assert rejected['impact_ranking'] is False

    again = client.post(f'/api/matches/{match_id}/reject', headers=b1_headers)
    assert json.loads(again.data)['replayed'] is True

    confirm = client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers)
    assert confirm.status_code == 409
    data = json.loads(confirm.data)
    assert data['code'] == 'CONFLICT'
    assert data['status'] == 'rejected'
    assert _ledger(a1) == []
    assert _ledger(b1) == []


def test_friendly_result_never_changes_ratings(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    match_id = _reported_match_id(client, a1_headers, [a1], [b1], match_type='FRIENDLY')

    res = client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['match']['status'] == 'confirmed'
    assert data['match']['impact_ranking'] is False
    assert data['elo_changes'] == []
    assert EloHistoryEntry.query.count() == 0


def test_doubles_confirmation_is_zero_sum(client, make_player):
    a1, a1_headers = make_player()
    a2, _ = make_player()
    b1, _ = make_player()
    b2, b2_headers = make_player()
    match_id = _reported_match_id(client, a1_headers, [a1, a2], [b1, b2])

    res = client.post(f'/api/matches/{match_id}/confirm', headers=b2_headers)
    assert res.status_code == 200
    changes = json.loads(res.data)['elo_changes']
    assert len(changes) == 4
    assert sum(change['delta'] for change in changes) == 0
    assert sum(_elo(uid) for uid in (a1, a2, b1, b2)) == 4 * 1200


def test_dispute_requires_known_reason(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    match_id = _reported_match_id(client, a1_headers, [a1], [b1])

    res = client.post(f'/api/matches/{match_id}/dispute', json={'reason': 'sore loser'}, headers=b1_headers)
    assert res.status_code == 400
    data = json.loads(res.data)
    assert data['code'] == 'VALIDATION_ERROR'
    assert 'wrong_score' in data['allowed_reasons']


def test_disputed_confirmed_result_resolved_as_is_keeps_single_rating(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    _, admin_headers = make_player('admin', is_admin=True)
    match_id = _reported_match_id(client, a1_headers, [a1], [b1])
    assert client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers).status_code == 200

    dispute = client.post(f'/api/matches/{match_id}/dispute', json={
        'reason': 'wrong_score',
        'message': 'Second set was 6-4',
    }, headers=b1_headers)
    assert dispute.status_code == 200
    disputed = json.loads(dispute.data)['match']
    assert disputed['status'] == 'disputed'
    assert disputed['dispute_reason'] == 'wrong_score'
    assert _elo(a1) == 1216

    participant_resolve = client.post(
        f'/api/matches/{match_id}/resolve-confirm-as-is', headers=a1_headers,
    )
    assert participant_resolve.status_code == 403

    resolve = client.post(f'/api/matches/{match_id}/resolve-confirm-as-is', headers=admin_headers)
    assert resolve.status_code == 200
    data = json.loads(resolve.data)
    assert data['match']['status'] == 'resolved'
    assert data['elo_changes'] == []
    assert _elo(a1) == 1216
    assert _elo(b1) == 1184
    assert EloHistoryEntry.query.filter_by(match_result_id=match_id).count() == 2

    replay = client.post(f'/api/matches/{match_id}/resolve-confirm-as-is', headers=admin_headers)
    assert json.loads(replay.data)['code'] == 'ALREADY_APPLIED'

    actions = [e.action for e in MatchResultEvent.query.filter_by(match_result_id=match_id)
               .order_by(MatchResultEvent.id)]
    assert actions == ['reported', 'confirmed', 'disputed', 'resolved']


def test_disputed_pending_result_is_rated_when_resolved(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    _, admin_headers = make_player('admin', is_admin=True)
    match_id = _reported_match_id(client, a1_headers, [a1], [b1])

    assert client.post(f'/api/matches/{match_id}/dispute', json={
        'reason': 'match_not_played',
    }, headers=b1_headers).status_code == 200
    assert _ledger(a1) == []

    confirm = client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers)
    assert confirm.status_code == 409

    resolve = client.post(f'/api/matches/{match_id}/resolve-confirm-as-is', headers=admin_headers)
    assert resolve.status_code == 200
    assert _elo(a1) == 1216
    assert _elo(b1) == 1184


def test_league_admin_can_resolve_league_result(client, make_player):
    owner, owner_headers = make_player()
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    league = client.post('/api/leagues', json={
        'name': 'Club Ladder', 'mode': 'open',
    }, headers=owner_headers)
    league_id = json.loads(league.data)['league']['id']
    for user_id in (a1, b1):
        added = client.post(f'/api/leagues/{league_id}/members', json={
            'user_id': user_id,
        }, headers=owner_headers)
        assert added.status_code == 201

    match_id = _reported_match_id(client, a1_headers, [a1], [b1], league_id=league_id, source='league')
    assert client.post(f'/api/matches/{match_id}/dispute', json={
        'reason': 'other',
    }, headers=b1_headers).status_code == 200

    res = client.post(f'/api/matches/{match_id}/resolve-confirm-as-is', headers=owner_headers)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['match']['status'] == 'resolved'
    assert data['match']['league_context_role'] == 'owner'


def test_idempotency_key_replays_first_report(client, make_player):
    a1, a1_headers = make_player()
    b1, _ = make_player()
    headers = dict(a1_headers, **{'Idempotency-Key': 'report-1'})

    first = _report(client, headers, [a1], [b1])
    second = _report(client, headers, [a1], [b1])
    assert first.status_code == 201
    assert second.status_code == 201
    assert json.loads(first.data)['match']['id'] == json.loads(second.data)['match']['id']
    assert MatchResult.query.count() == 1

    other_path = client.post('/api/matches/1/confirm', headers=headers)
    assert other_path.status_code == 409


def test_ledger_matches_ratings_after_lifecycle(client, make_player):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    for _ in range(3):
        match_id = _reported_match_id(client, a1_headers, [a1], [b1])
        assert client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers).status_code == 200

    assert audit_ledger() == []
    assert sum(entry.delta for entry in _ledger(a1)) == _elo(a1) - 1200


def test_failed_rating_write_rolls_back_confirmation(client, make_player, monkeypatch):
    a1, a1_headers = make_player()
    b1, b1_headers = make_player()
    match_id = _reported_match_id(client, a1_headers, [a1], [b1])

    def broken_ledger(*args, **kwargs):
        raise RuntimeError('ledger write failed')

    monkeypatch.setattr(rating_engine, 'append_ledger_entry', broken_ledger)
    res = client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers)
    assert res.status_code == 500
    assert json.loads(res.data)['code'] == 'INTERNAL'

    match = db.session.get(MatchResult, match_id)
    assert match.status == 'pending_confirm'
    assert match.elo_applied is False
    assert match.confirmed_by_user_id is None
    assert EloHistoryEntry.query.count() == 0
    assert RatingProfile.query.count() == 0
    actions = [e.action for e in MatchResultEvent.query.filter_by(match_result_id=match_id)]
    assert actions == ['reported']

    monkeypatch.undo()
    retry = client.post(f'/api/matches/{match_id}/confirm', headers=b1_headers)
    assert retry.status_code == 200
    assert json.loads(retry.data)['replayed'] is False
    assert _elo(a1) == 1216
    assert audit_ledger() == []


@pytest.fixture
def file_app(tmp_path, monkeypatch):
    """App on a file-backed SQLite database so several threads share one store."""
    monkeypatch.setattr(
        TestingConfig, 'SQLALCHEMY_DATABASE_URI', f'sqlite:///{tmp_path / "ladder.db"}',
    )
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def _file_user(username):
    user = User(username=username, email=f'{username}@test.com')
    db.session.add(user)
    db.session.commit()
    return user.id, {'Authorization': f'Bearer {generate_token(user.id)}'}


def test_simultaneous_confirms_rate_the_result_once(file_app, monkeypatch):
    """Two confirm requests read the pending result before either commits."""
    a1, a1_headers = _file_user('alice')
    b1, b1_headers = _file_user('bob')
    match_id = _reported_match_id(file_app.test_client(), a1_headers, [a1], [b1])
    db.session.remove()

    both_read = threading.Barrier(2, timeout=10)
    waited = threading.local()
    real_lock = match_lifecycle.lock_match_result

    def lock_then_wait(locked_id):
        match = real_lock(locked_id)
        if not getattr(waited, 'done', False):
            waited.done = True
            both_read.wait()
        return match

    monkeypatch.setattr(match_lifecycle, 'lock_match_result', lock_then_wait)

    responses = []

    def confirm():
        res = file_app.test_client().post(f'/api/matches/{match_id}/confirm', headers=b1_headers)
        responses.append((res.status_code, json.loads(res.data)))

    threads = [threading.Thread(target=confirm) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(status for status, _ in responses) == [200, 200]
    assert sorted(data['replayed'] for _, data in responses) == [False, True]
    replay = next(data for _, data in responses if data['replayed'])
    assert replay['code'] == 'ALREADY_APPLIED'
    assert replay['elo_changes'] == []

    assert EloHistoryEntry.query.filter_by(match_result_id=match_id).count() == 2
    assert _elo(a1) == 1216
    assert _elo(b1) == 1184
    assert db.session.get(MatchResult, match_id).elo_applied is True
    assert audit_ledger() == []
