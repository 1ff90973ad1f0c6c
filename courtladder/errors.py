"""
Typed errors raised by the ladder services.

Every error carries a stable ``code`` that clients switch on and the HTTP
status the API answers with. Messages are written for the player or admin
who triggered them.
"""


class LadderError(Exception):
    """Base class for expected, user-facing failures."""
    code = 'LADDER_ERROR'
    status_code = 400

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        payload.update(self.details)
        return payload


class Forbidden(LadderError):
    code = 'FORBIDDEN'
    status_code = 403


class NotFound(LadderError):
    code = 'NOT_FOUND'
    status_code = 404


class Conflict(LadderError):
    """Transition is not legal for the result's current status."""
    code = 'CONFLICT'
    status_code = 409


class ValidationError(LadderError):
    code = 'VALIDATION_ERROR'
    status_code = 400


class InvalidScoreline(LadderError):
    code = 'INVALID_SCORELINE'
    status_code = 400


class LeagueMembersMissing(LadderError):
    code = 'LEAGUE_MEMBERS_MISSING'
    status_code = 400

    def __init__(self, missing_user_ids):
        super().__init__(
            'Every player must be a member of the league to report a league result',
            missing_user_ids=sorted(missing_user_ids),
        )


class ScoringRulesMissing(LadderError):
    code = 'LEAGUE_SCORING_MISSING'
    status_code = 422

    def __init__(self, league_id, reason='League has no scoring rules configured'):
        super().__init__(reason, league_id=league_id)


class CategoryLocked(LadderError):
    code = 'CATEGORY_LOCKED'
    status_code = 409

    def __init__(self):
        super().__init__(
            'Your category is now set by your match results and can no longer be chosen'
        )


class StorageUnavailable(LadderError):
    """Transient storage failure. Retrying the same request is safe."""
    code = 'STORAGE_UNAVAILABLE'
    status_code = 503

    def __init__(self, message='Could not save your change, please try again'):
        super().__init__(message, retryable=True)
