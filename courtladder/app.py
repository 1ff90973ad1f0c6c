import logging
import sys

from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from courtladder.config import config
from courtladder.errors import LadderError

db = SQLAlchemy()
socketio = SocketIO()

logger = logging.getLogger(__name__)

_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _parse_allowed_origins(raw_origins):
    if not raw_origins:
        return '*'

    if isinstance(raw_origins, (list, tuple, set)):
        cleaned = [origin for origin in raw_origins if origin]
        return cleaned or '*'

    raw_text = str(raw_origins).strip()
    if not raw_text or raw_text == '*':
        return '*'

    origins = [origin.strip() for origin in raw_text.split(',') if origin.strip()]
    return origins or '*'


def _configure_logging(level_name):
    """Attach one stdout handler to the package logger."""
    level = getattr(logging, str(level_name or 'INFO').upper(), logging.INFO)
    package_logger = logging.getLogger('courtladder')
    package_logger.setLevel(level)
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        package_logger.addHandler(handler)
    return package_logger


def _register_error_handlers(app):
    @app.errorhandler(LadderError)
    def _handle_ladder_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def _handle_http_error(exc):
        code = str(exc.name or 'error').upper().replace(' ', '_')
        return jsonify({'error': exc.description, 'code': code}), exc.code

    @app.errorhandler(Exception)
    def _handle_unexpected(exc):
        logger.exception('Unhandled error while serving request: %s', exc)
        db.session.rollback()
        return jsonify({'error': 'Internal server error', 'code': 'INTERNAL'}), 500


def create_app(config_name='development'):
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    _configure_logging(app.config.get('LOG_LEVEL'))

    allowed_origins = _parse_allowed_origins(app.config.get('CORS_ALLOWED_ORIGINS', '*'))
    if str(config_name).strip().lower() == 'production':
        secret_key = str(app.config.get('SECRET_KEY') or '').strip()
        if not secret_key or secret_key == 'dev-secret-key-change-in-prod':
            raise RuntimeError('SECRET_KEY must be set to a non-default value in production')
        if allowed_origins == '*':
            raise RuntimeError('CORS_ALLOWED_ORIGINS must be explicitly set in production')

    db.init_app(app)
    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins,
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE', 'threading'),
    )
    CORS(app, resources={r'/api/*': {'origins': allowed_origins}})
    _register_error_handlers(app)

    from courtladder.routes.matches import matches_bp
    from courtladder.routes.me import me_bp
    from courtladder.routes.leagues import leagues_bp
    from courtladder.routes.admin import admin_bp

    app.register_blueprint(matches_bp, url_prefix='/api/matches')
    app.register_blueprint(me_bp, url_prefix='/api/me')
    app.register_blueprint(leagues_bp, url_prefix='/api/leagues')
    app.register_blueprint(admin_bp, url_prefix='/api/admin')

    @app.route('/api/health')
    def health():
        return jsonify({'status': 'ok'})

    with app.app_context():
        from courtladder import models  # noqa: F401
        db.create_all()

    logger.info('courtladder started with %s config', config_name)
    return app
