import json
from courtladder.app import db
from courtladder.time_utils import utcnow_naive, isoformat_or_none


def _safe_json(raw_value, fallback=None):
    if fallback is None:
        fallback = {}
    if not raw_value:
        return fallback
    try:
        return json.loads(raw_value)
    except (TypeError, ValueError):
        return fallback


class MatchStatus:
    PENDING_CONFIRM = 'pending_confirm'
    CONFIRMED = 'confirmed'
    REJECTED = 'rejected'
    DISPUTED = 'disputed'
    RESOLVED = 'resolved'

    ALL = (PENDING_CONFIRM, CONFIRMED, REJECTED, DISPUTED, RESOLVED)
    ACCEPTED = (CONFIRMED, RESOLVED)


class MatchType:
    COMPETITIVE = 'COMPETITIVE'
    FRIENDLY = 'FRIENDLY'

    ALL = (COMPETITIVE, FRIENDLY)


class LedgerReason:
    INIT_CATEGORY = 'init_category'
    MATCH_RESULT = 'match_result'
    MATCH_REVERSAL = 'match_reversal'
    RESOLUTION_RESULT = 'resolution_result'
    ADMIN_ADJUSTMENT = 'admin_adjustment'

    # Entries whose ``result`` column counts as the player's outcome for a match.
    OUTCOMES = (MATCH_RESULT, RESOLUTION_RESULT)


class User(db.Model):
    """Mirror of an identity owned by the external auth service."""
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    display_name = db.Column(db.String(120), default='')
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    @property
    def label(self):
        return self.display_name or self.username

    def to_dict(self):
        return {
            'id': self.id, 'username': self.username,
            'display_name': self.label,
        }


# ── Leagues ──────────────────────────────────────────────────────────

class League(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    mode = db.Column(db.String(20), default='scheduled', nullable=False)  # open, scheduled
    status = db.Column(db.String(20), default='active', nullable=False)
    # upcoming, active, finished
    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    scoring_rules_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    creator = db.relationship('User', backref='created_leagues')
    members = db.relationship(
        'LeagueMember',
        backref='league',
        lazy='selectin',
        cascade='all, delete-orphan',
    )

    @property
    def scoring_rules(self):
        if not self.scoring_rules_json:
            return None
        return _safe_json(self.scoring_rules_json, fallback=None)

    @scoring_rules.setter
    def scoring_rules(self, value):
        self.scoring_rules_json = json.dumps(value) if value is not None else None

    def member_role(self, user_id):
        for member in self.members:
            if member.user_id == user_id:
                return member.role
        return None

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'mode': self.mode,
            'status': self.status,
            'start_date': isoformat_or_none(self.start_date),
            'end_date': isoformat_or_none(self.end_date),
            'creator_id': self.creator_id,
            'scoring_rules': self.scoring_rules,
            'members_count': len(self.members),
            'created_at': isoformat_or_none(self.created_at),
        }


class LeagueMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    league_id = db.Column(db.Integer, db.ForeignKey('league.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    role = db.Column(db.String(20), default='member', nullable=False)  # member, admin, owner
    joined_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint('league_id', 'user_id', name='uq_league_member_unique'),
    )

    user = db.relationship('User', backref='league_memberships')

    def to_dict(self):
        return {
            'league_id': self.league_id,
            'user_id': self.user_id,
            'role': self.role,
            'joined_at': isoformat_or_none(self.joined_at),
            'user': self.user.to_dict() if self.user else None,
        }


# ── Ratings ──────────────────────────────────────────────────────────

class RatingProfile(db.Model):
    """Current competitive rating of a player. ``elo`` mirrors the ledger sum."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), unique=True, nullable=False)
    elo = db.Column(db.Integer, nullable=False)
    peak_elo = db.Column(db.Integer, nullable=False)
    category = db.Column(db.Integer, nullable=False)
    initial_category = db.Column(db.Integer, nullable=True)
    category_locked = db.Column(db.Boolean, default=False, nullable=False)
    wins = db.Column(db.Integer, default=0, nullable=False)
    losses = db.Column(db.Integer, default=0, nullable=False)
    matches_played = db.Column(db.Integer, default=0, nullable=False)
    win_streak_current = db.Column(db.Integer, default=0, nullable=False)
    win_streak_best = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    updated_at = db.Column(
        db.DateTime, default=lambda: utcnow_naive(), onupdate=lambda: utcnow_naive(),
    )

    __table_args__ = (
        db.Index('ix_rating_profile_elo', 'elo'),
    )

    user = db.relationship('User', backref=db.backref('rating_profile', uselist=False))

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'elo': self.elo,
            'peak_elo': self.peak_elo,
            'category': self.category,
            'initial_category': self.initial_category,
            'category_locked': self.category_locked,
            'wins': self.wins,
            'losses': self.losses,
            'matches_played': self.matches_played,
            'win_streak_current': self.win_streak_current,
            'win_streak_best': self.win_streak_best,
            'created_at': isoformat_or_none(self.created_at),
            'updated_at': isoformat_or_none(self.updated_at),
        }


class EloHistoryEntry(db.Model):
    """Append-only rating ledger. Rows are never updated or deleted."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    match_result_id = db.Column(db.Integer, db.ForeignKey('match_result.id'), nullable=True)
    delta = db.Column(db.Integer, nullable=False)
    elo_before = db.Column(db.Integer, nullable=False)
    elo_after = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(30), nullable=False)
    result = db.Column(db.String(10), nullable=True)  # win, loss
    note = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint(
            'match_result_id', 'user_id', 'reason',
            name='uq_elo_history_match_user_reason',
        ),
        db.Index('ix_elo_history_user_id', 'user_id', 'id'),
        db.Index('ix_elo_history_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'elo_before': self.elo_before,
            'elo_after': self.elo_after,
            'delta': self.delta,
            'reason': self.reason,
            'result': self.result,
            'ref_id': self.match_result_id,
            'note': self.note,
            'created_at': isoformat_or_none(self.created_at),
        }


# ── Match results ────────────────────────────────────────────────────

class MatchResult(db.Model):
    """A reported match result moving through the confirmation lifecycle."""
    id = db.Column(db.Integer, primary_key=True)
    league_id = db.Column(db.Integer, db.ForeignKey('league.id'), nullable=True)
    challenge_id = db.Column(db.Integer, nullable=True)
    reservation_id = db.Column(db.Integer, nullable=True)
    match_type = db.Column(db.String(20), default=MatchType.COMPETITIVE, nullable=False)
    source = db.Column(db.String(20), default='manual', nullable=False)
    # reservation, manual, challenge, league
    status = db.Column(db.String(20), default=MatchStatus.PENDING_CONFIRM, nullable=False)
    sets_json = db.Column(db.Text, nullable=False)
    winner_team = db.Column(db.String(1), nullable=False)  # A, B
    reported_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    confirmed_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    rejected_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    disputed_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    resolved_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    rejection_reason = db.Column(db.String(500), nullable=True)
    dispute_reason = db.Column(db.String(50), nullable=True)
    dispute_message = db.Column(db.String(1000), nullable=True)
    resolution_note = db.Column(db.String(1000), nullable=True)
    elo_applied = db.Column(db.Boolean, default=False, nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    played_at = db.Column(db.DateTime, nullable=False, default=lambda: utcnow_naive())
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    updated_at = db.Column(
        db.DateTime, default=lambda: utcnow_naive(), onupdate=lambda: utcnow_naive(),
    )

    __table_args__ = (
        db.Index('ix_match_result_league_status', 'league_id', 'status'),
        db.Index('ix_match_result_status_applied', 'status', 'elo_applied'),
        db.CheckConstraint(
            "status in ('pending_confirm','confirmed','rejected','disputed','resolved')",
            name='ck_match_result_status',
        ),
        db.CheckConstraint("winner_team in ('A','B')", name='ck_match_result_winner'),
    )
    __mapper_args__ = {'version_id_col': version}

    league = db.relationship('League', backref='match_results')
    reported_by = db.relationship('User', foreign_keys=[reported_by_user_id])
    # selectin keeps SELECT ... FOR UPDATE free of outer joins
    players = db.relationship(
        'MatchResultPlayer',
        backref='match_result',
        lazy='selectin',
        cascade='all, delete-orphan',
        order_by='MatchResultPlayer.id',
    )
    events = db.relationship(
        'MatchResultEvent',
        backref='match_result',
        lazy='select',
        cascade='all, delete-orphan',
        order_by='MatchResultEvent.id',
    )

    @property
    def sets(self):
        return [tuple(pair) for pair in _safe_json(self.sets_json, fallback=[])]

    @sets.setter
    def sets(self, value):
        self.sets_json = json.dumps([list(pair) for pair in value])

    @property
    def is_competitive(self):
        return self.match_type == MatchType.COMPETITIVE

    def team_user_ids(self, team):
        return [p.user_id for p in self.players if p.team == team]

    @property
    def participant_ids(self):
        return {p.user_id for p in self.players}

    def team_of(self, user_id):
        for player in self.players:
            if player.user_id == user_id:
                return player.team
        return None

    def score_label(self):
        return ', '.join(f'{a}-{b}' for a, b in self.sets)

    def to_dict(self, viewer_id=None, include_events=False):
        players_list = [p.to_dict() for p in self.players]
        data = {
            'id': self.id,
            'league_id': self.league_id,
            'challenge_id': self.challenge_id,
            'reservation_id': self.reservation_id,
            'match_type': self.match_type,
            'source': self.source,
            'status': self.status,
            'sets': [{'a': a, 'b': b} for a, b in self.sets],
            'score': self.score_label(),
            'winner_team': self.winner_team,
            'reported_by_user_id': self.reported_by_user_id,
            'confirmed_by_user_id': self.confirmed_by_user_id,
            'rejected_by_user_id': self.rejected_by_user_id,
            'disputed_by_user_id': self.disputed_by_user_id,
            'resolved_by_user_id': self.resolved_by_user_id,
            'rejection_reason': self.rejection_reason,
            'dispute_reason': self.dispute_reason,
            'dispute_message': self.dispute_message,
            'resolution_note': self.resolution_note,
            'elo_applied': self.elo_applied,
            'impact_ranking': self.is_competitive and self.status not in (
                MatchStatus.REJECTED,
            ),
            'team_a': [p for p in players_list if p['team'] == 'A'],
            'team_b': [p for p in players_list if p['team'] == 'B'],
            'played_at': isoformat_or_none(self.played_at),
            'created_at': isoformat_or_none(self.created_at),
            'updated_at': isoformat_or_none(self.updated_at),
        }
        if viewer_id is not None:
            data['viewer_role'] = _viewer_role(self, viewer_id)
            data['league_context_role'] = (
                self.league.member_role(viewer_id) if self.league else None
            )
        if include_events:
            data['events'] = [event.to_dict() for event in self.events]
        return data


def _viewer_role(match, viewer_id):
    if viewer_id == match.reported_by_user_id:
        return 'reporter'
    if viewer_id in match.participant_ids:
        return 'opponent' if match.team_of(viewer_id) != match.team_of(
            match.reported_by_user_id
        ) else 'partner'
    return None


class MatchResultPlayer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    match_result_id = db.Column(db.Integer, db.ForeignKey('match_result.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    team = db.Column(db.String(1), nullable=False)  # A, B

    __table_args__ = (
        db.UniqueConstraint('match_result_id', 'user_id', name='uq_match_result_player_unique'),
        db.Index('ix_match_result_player_user', 'user_id', 'match_result_id'),
    )

    user = db.relationship('User', backref='match_result_participations')

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'team': self.team,
            'display_name': self.user.label if self.user else None,
        }


class MatchResultEvent(db.Model):
    """Audit trail entry for a match result transition."""
    id = db.Column(db.Integer, primary_key=True)
    match_result_id = db.Column(db.Integer, db.ForeignKey('match_result.id'), nullable=False)
    actor_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    action = db.Column(db.String(20), nullable=False)
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=False)
    reason = db.Column(db.String(500), nullable=True)
    message = db.Column(db.String(1000), nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    def to_dict(self):
        return {
            'id': self.id,
            'actor_user_id': self.actor_user_id,
            'action': self.action,
            'from_status': self.from_status,
            'to_status': self.to_status,
            'reason': self.reason,
            'message': self.message,
            'created_at': isoformat_or_none(self.created_at),
        }


# ── Standings ────────────────────────────────────────────────────────

class LeagueStandingsSnapshot(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    league_id = db.Column(db.Integer, db.ForeignKey('league.id'), nullable=False)
    scope = db.Column(db.String(20), nullable=False)
    fingerprint = db.Column(db.String(64), nullable=False)
    computed_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.Index('ix_standings_snapshot_league_scope', 'league_id', 'scope', 'id'),
    )

    rows = db.relationship(
        'LeagueStandingsRow',
        backref='snapshot',
        lazy='selectin',
        cascade='all, delete-orphan',
        order_by='LeagueStandingsRow.position',
    )


class LeagueStandingsRow(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    snapshot_id = db.Column(
        db.Integer, db.ForeignKey('league_standings_snapshot.id'), nullable=False,
    )
    league_id = db.Column(db.Integer, db.ForeignKey('league.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    points = db.Column(db.Integer, default=0, nullable=False)
    elo = db.Column(db.Integer, nullable=False)
    wins = db.Column(db.Integer, default=0, nullable=False)
    losses = db.Column(db.Integer, default=0, nullable=False)
    matches_played = db.Column(db.Integer, default=0, nullable=False)
    sets_won = db.Column(db.Integer, default=0, nullable=False)
    sets_lost = db.Column(db.Integer, default=0, nullable=False)
    games_won = db.Column(db.Integer, default=0, nullable=False)
    games_lost = db.Column(db.Integer, default=0, nullable=False)
    position_delta = db.Column(db.Integer, nullable=True)

    __table_args__ = (
        db.UniqueConstraint('snapshot_id', 'user_id', name='uq_standings_row_snapshot_user'),
    )

    user = db.relationship('User')

    def to_dict(self):
        return {
            'league_id': self.league_id,
            'user_id': self.user_id,
            'display_name': self.user.label if self.user else None,
            'position': self.position,
            'position_delta': self.position_delta,
            'points': self.points,
            'elo': self.elo,
            'wins': self.wins,
            'losses': self.losses,
            'matches_played': self.matches_played,
            'set_diff': self.sets_won - self.sets_lost,
            'game_diff': self.games_won - self.games_lost,
            'computed_at': isoformat_or_none(self.snapshot.computed_at) if self.snapshot else None,
        }


# ── Request replay ───────────────────────────────────────────────────

class IdempotencyRecord(db.Model):
    """First successful response for a client-supplied Idempotency-Key."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    key = db.Column(db.String(128), nullable=False)
    method = db.Column(db.String(10), nullable=False)
    path = db.Column(db.String(255), nullable=False)
    status_code = db.Column(db.Integer, nullable=False)
    response_body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint('user_id', 'key', name='uq_idempotency_user_key'),
    )

    @property
    def response(self):
        return _safe_json(self.response_body)
