"""WSGI entrypoint used by Gunicorn."""
import os

from courtladder.app import create_app
from courtladder.config import _env_bool
from courtladder.services.rating_engine import replay_pending_rating_updates

config_name = os.environ.get('FLASK_ENV', 'production')
app = create_app(config_name)

if _env_bool('REPLAY_RATINGS_ON_BOOT', False):
    with app.app_context():
        applied = replay_pending_rating_updates()
        if applied:
            print(f"Replayed ratings for {applied} accepted results")
