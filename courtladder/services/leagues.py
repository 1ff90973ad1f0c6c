"""League setup: creation and membership."""
import logging

from courtladder.app import db
from courtladder.errors import Forbidden, NotFound, ValidationError
from courtladder.models import League, LeagueMember, User
from courtladder.services.match_store import atomic
from courtladder.services.standings import LEAGUE_MODES, MODE_SCHEDULED, validate_scoring_rules

logger = logging.getLogger(__name__)

ASSIGNABLE_ROLES = ('member', 'admin')
MANAGER_ROLES = ('owner', 'admin')
_MAX_NAME_LENGTH = 200


def get_league(league_id):
    league = db.session.get(League, league_id)
    if not league:
        raise NotFound('League not found')
    return league


def create_league(creator, name, mode=MODE_SCHEDULED, start_date=None, end_date=None,
                  scoring_rules=None):
    name = str(name or '').strip()
    if not name:
        raise ValidationError('League name is required')
    if len(name) > _MAX_NAME_LENGTH:
        raise ValidationError(f'League name must be at most {_MAX_NAME_LENGTH} characters')
    mode = str(mode or MODE_SCHEDULED).strip().lower()
    if mode not in LEAGUE_MODES:
        raise ValidationError('Invalid league mode', allowed=list(LEAGUE_MODES))
    if start_date and end_date and end_date < start_date:
        raise ValidationError('end_date must not be before start_date')

    rules = None
    if scoring_rules is not None:
        rules = validate_scoring_rules(scoring_rules)
        if rules is None:
            raise ValidationError(
                'scoring_rules needs integer "win" and "loss" values and an optional "set_won"'
            )

    with atomic():
        league = League(
            name=name,
            mode=mode,
            start_date=start_date,
            end_date=end_date,
            creator_id=creator.id,
        )
        league.scoring_rules = rules
        league.members.append(LeagueMember(user_id=creator.id, role='owner'))
        db.session.add(league)

    logger.info('User %s created %s league %s', creator.id, mode, league.id)
    return league


def add_member(actor, league_id, user_id, role='member'):
    """Add a player to a league, or change an existing member's role."""
    league = get_league(league_id)
    if not (getattr(actor, 'is_admin', False) or league.member_role(actor.id) in MANAGER_ROLES):
        raise Forbidden('Only league admins can manage members')
    role = str(role or 'member').strip().lower()
    if role not in ASSIGNABLE_ROLES:
        raise ValidationError('Invalid role', allowed=list(ASSIGNABLE_ROLES))
    if not db.session.get(User, user_id):
        raise NotFound('User not found')

    with atomic():
        member = LeagueMember.query.filter_by(league_id=league_id, user_id=user_id).first()
        if member is None:
            member = LeagueMember(league_id=league_id, user_id=user_id, role=role)
            db.session.add(member)
        elif member.role != 'owner':
            member.role = role

    logger.info('User %s set user %s as %s of league %s', actor.id, user_id, member.role, league_id)
    return member
