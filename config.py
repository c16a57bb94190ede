import os

from dotenv import load_dotenv

load_dotenv()


def _database_url():
    database_url = os.environ.get('DATABASE_URL')
    if database_url and database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)
    return database_url


def _env_flag(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def engine_options(database_url):
    """Connection pool settings; only PostgreSQL gets a sized pool."""
    if not database_url or not database_url.startswith('postgresql'):
        return {}
    options = {
        'connect_args': {'connect_timeout': 10},
        'pool_size': int(os.environ.get('DATABASE_POOL_SIZE', 5)),
        'max_overflow': int(os.environ.get('DATABASE_MAX_OVERFLOW', 10)),
        'pool_timeout': 30,
        'pool_pre_ping': True,
    }
    sslmode = os.environ.get('DATABASE_SSLMODE')
    if sslmode:
        options['connect_args']['sslmode'] = sslmode
    return options


class Config:
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = engine_options(SQLALCHEMY_DATABASE_URI)

    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-change-me')
    SESSION_TYPE = os.environ.get('SESSION_TYPE', 'sqlalchemy')
    SESSION_PERMANENT = False
    SESSION_COOKIE_SECURE = _env_flag('SESSION_COOKIE_SECURE', True)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(',')
        if origin.strip()
    ]

    SCHEDULER_ENABLED = _env_flag('SCHEDULER_ENABLED', True)
    OVERDUE_SWEEP_HOURS = int(os.environ.get('OVERDUE_SWEEP_HOURS', 1))

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')
