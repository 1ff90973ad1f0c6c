import pytest
from courtladder.app import create_app, db
from courtladder.auth_utils import generate_token
from courtladder.models import User


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_player(app):
    """Create a user and return (user_id, auth headers).

    Identities live in the external auth service; tests mirror them directly.
    """
    created = []

    def _make(username=None, display_name='', is_admin=False):
        username = username or f'player{len(created) + 1}'
        user = User(
            username=username, email=f'{username}@test.com',
            display_name=display_name, is_admin=is_admin,
        )
        db.session.add(user)
        db.session.commit()
        created.append(user.id)
        return user.id, {'Authorization': f'Bearer {generate_token(user.id)}'}

    return _make
