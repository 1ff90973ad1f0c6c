import os

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_scoring_rules(prefix, defaults):
    rules = dict(defaults)
    for key in defaults:
        rules[key] = _env_int(f'{prefix}_{key.upper()}', defaults[key])
    return rules


def _normalize_database_url(raw_url):
    if not raw_url:
        return raw_url
    if raw_url.startswith('postgres://'):
        return raw_url.replace('postgres://', 'postgresql://', 1)
    return raw_url


class BaseConfig:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-prod')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_EXPIRATION_HOURS = _env_int('JWT_EXPIRATION_HOURS', 24)
    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '*')
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'threading')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Rating model
    ELO_INITIAL = _env_int('ELO_INITIAL', 1200)
    ELO_K_FACTOR = _env_int('ELO_K_FACTOR', 32)
    ELO_MIN_DELTA = _env_int('ELO_MIN_DELTA', 1)
    ELO_MAX_DELTA = _env_int('ELO_MAX_DELTA', 50)
    ELO_HISTORY_DEFAULT_LIMIT = 20
    ELO_HISTORY_MAX_LIMIT = _env_int('ELO_HISTORY_MAX_LIMIT', 100)

    # Standings
    STANDINGS_REFRESH_ON_RESULT = _env_bool('STANDINGS_REFRESH_ON_RESULT', True)
    DEFAULT_SCORING_RULES = _env_scoring_rules(
        'DEFAULT_SCORING', {'win': 3, 'loss': 0, 'set_won': 0},
    )


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(
        os.environ.get(
            'DATABASE_URL',
            'sqlite:///' + os.path.join(basedir, '..', 'courtladder_dev.db')
        )
    )


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_LEVEL = 'WARNING'
    ELO_K_FACTOR = 32
    ELO_MIN_DELTA = 1
    ELO_MAX_DELTA = 50


class ProductionConfig(BaseConfig):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(os.environ.get('DATABASE_URL'))


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
