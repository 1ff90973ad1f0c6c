"""Shared helpers for the API blueprints."""
import logging
from datetime import datetime, timezone
from functools import wraps

from flask import jsonify, make_response, request
from sqlalchemy.exc import IntegrityError

from courtladder.app import db, socketio
from courtladder.errors import Conflict, ValidationError
from courtladder.models import IdempotencyRecord, MatchStatus
from courtladder.services.standings import refresh_league_standings_quietly
from courtladder.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

_MAX_IDEMPOTENCY_KEY_LENGTH = 128


def _json_body():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')
    return data


def _parse_team_ids(raw_ids):
    if not isinstance(raw_ids, list):
        return None
    ids = []
    for raw in raw_ids:
        if isinstance(raw, bool):
            return None
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return None
        if value <= 0:
            return None
        ids.append(value)
    return ids


def _optional_int(raw_value, field):
    if raw_value is None or raw_value == '':
        return None
    if isinstance(raw_value, bool):
        raise ValidationError(f'{field} must be an integer')
    try:
        return int(raw_value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')


def _parse_iso_datetime(raw_value, field):
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    if raw_value is None or raw_value == '':
        return None
    text = str(raw_value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f'{field} must be an ISO-8601 timestamp')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _emit_match_update(match, reason):
    socketio.emit('match_result_update', {
        'match_id': match.id,
        'league_id': match.league_id,
        'status': match.status,
        'reason': reason,
        'user_ids': sorted(match.participant_ids),
        'updated_at': utcnow_naive().isoformat(),
    })


def _emit_standings_update(standings):
    socketio.emit('standings_update', {
        'league_id': standings.league_id,
        'scope': standings.scope,
        'snapshot_id': standings.snapshot_id,
        'computed_at': standings.computed_at,
        'reason': 'recomputed',
        'updated_at': utcnow_naive().isoformat(),
    })


def _after_match_change(match, reason):
    """Notify clients and refresh the league table once a change has committed."""
    _emit_match_update(match, reason)
    if match.league_id and match.status in MatchStatus.ACCEPTED:
        standings = refresh_league_standings_quietly(match.league_id)
        if standings is not None:
            _emit_standings_update(standings)


def idempotent(f):
    """Replay the first successful response stored for an ``Idempotency-Key``.

    Must sit below ``login_required``: keys are scoped per user.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        key = str(request.headers.get('Idempotency-Key') or '').strip()
        if not key:
            return f(*args, **kwargs)
        if len(key) > _MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError(
                f'Idempotency-Key must be at most {_MAX_IDEMPOTENCY_KEY_LENGTH} characters'
            )

        user_id = request.current_user.id
        record = IdempotencyRecord.query.filter_by(user_id=user_id, key=key).first()
        if record is not None:
            if record.method != request.method or record.path != request.path:
                raise Conflict('Idempotency-Key was already used for a different request')
            logger.info('Replaying stored response for key %s of user %s', key, user_id)
            return jsonify(record.response), record.status_code

        response = make_response(f(*args, **kwargs))
        if 200 <= response.status_code < 300 and response.is_json:
            db.session.add(IdempotencyRecord(
                user_id=user_id,
                key=key,
                method=request.method,
                path=request.path,
                status_code=response.status_code,
                response_body=response.get_data(as_text=True),
            ))
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                logger.info('Key %s of user %s was stored by a parallel request', key, user_id)
        return response
    return decorated
