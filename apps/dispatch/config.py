"""
Ops Notify - Configuration
Application configuration management
"""
import os
import logging
from datetime import timedelta
from pathlib import Path
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Monorepo layout: <repo>/apps/dispatch/config.py -> BASE_DIR=<repo>
_THIS_DIR = Path(__file__).parent.resolve()
_MONOREPO_ROOT = _THIS_DIR.parent.parent
if (_MONOREPO_ROOT / 'apps' / 'dispatch').exists():
    BASE_DIR = _MONOREPO_ROOT.resolve()
else:
    BASE_DIR = _THIS_DIR


def _require_env(name: str, default: str = None, allow_default_in_dev: bool = True) -> str:
    """
    Get environment variable, failing loudly in production if not set.

    Args:
        name: Environment variable name
        default: Default value (only used in development)
        allow_default_in_dev: Whether to allow default in development mode

    Returns:
        The environment variable value

    Raises:
        RuntimeError: If variable is not set in production
    """
    value = os.getenv(name)
    is_production = os.getenv('FLASK_ENV', 'development') == 'production'

    if value:
        return value

    if is_production:
        # In production, critical secrets MUST be set
        if default is None or name in ('SECRET_KEY', 'JWT_SECRET_KEY'):
            raise RuntimeError(
                f"SECURITY ERROR: {name} environment variable is required in production. "
                f"Set it in your deployment environment."
            )
        logging.warning(f"Using default value for {name} in production - consider setting explicitly")
        return default

    # Development mode - allow defaults
    if default is not None and allow_default_in_dev:
        logging.debug(f"Using default value for {name} in development")
        return default

    raise RuntimeError(f"{name} environment variable is required")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        logging.warning("Invalid integer for %s; using %s", name, default)
        return default


def get_database_url():
    """
    Get and process the database URL for proper connection handling.
    - Ensures SSL is enabled for PostgreSQL connections
    - Handles URL scheme conversion (postgres:// -> postgresql://)
    """
    url = os.getenv('DATABASE_URL')

    if not url:
        fallback = 'sqlite:///' + str(BASE_DIR / 'dispatch-dev.db')
        logging.warning("DATABASE_URL not set; using fallback %s", fallback)
        return fallback

    # Heroku/Render style postgres:// URLs (SQLAlchemy requires postgresql://)
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)

    if url.startswith('postgresql://'):
        try:
            parsed = urlparse(url)
            query_params = parse_qs(parsed.query)
            if 'sslmode' not in query_params:
                query_params['sslmode'] = [os.getenv('DATABASE_SSLMODE', 'require')]
            new_query = urlencode(query_params, doseq=True)
            url = urlunparse((
                parsed.scheme,
                parsed.netloc,
                parsed.path,
                parsed.params,
                new_query,
                parsed.fragment
            ))
        except ValueError as e:
            # URL parsing failed - likely due to special characters in password
            logging.warning(f"Could not parse DATABASE_URL (special chars?): {e}")
            if 'sslmode=' not in url:
                separator = '&' if '?' in url else '?'
                url = f"{url}{separator}sslmode=require"

    return url


def get_engine_options():
    """SQLAlchemy engine options based on the database type."""
    db_url = get_database_url()

    options = {
        'pool_pre_ping': True,  # Verify connections before use (handles stale connections)
    }

    if db_url.startswith('postgresql://'):
        options.update({
            'pool_recycle': 180,
            'pool_timeout': 20,
            'pool_size': 5,
            'max_overflow': 5,
            'connect_args': {
                'connect_timeout': 20,
                'options': '-c statement_timeout=20000',  # 20 second query timeout
                'application_name': 'ops-notify-dispatch',
            }
        })

    if db_url.startswith('sqlite://'):
        options = {}

    return options


class Config:
    """Base configuration"""

    # Flask - SECRET_KEY is REQUIRED in production
    SECRET_KEY = _require_env('SECRET_KEY', 'dev-secret-key-for-local-development-only')
    DEBUG = os.getenv('DEBUG', 'False') == 'True'
    FLASK_ENV = os.getenv('FLASK_ENV', 'development')

    # Database
    SQLALCHEMY_DATABASE_URI = get_database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = DEBUG
    SQLALCHEMY_ENGINE_OPTIONS = get_engine_options()

    # JWT - JWT_SECRET_KEY is REQUIRED in production
    JWT_SECRET_KEY = _require_env('JWT_SECRET_KEY', 'jwt-dev-secret-for-local-development-only')
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(
        seconds=_env_int('JWT_ACCESS_TOKEN_EXPIRES', 3600)
    )
    JWT_ALGORITHM = 'HS256'
    JWT_TOKEN_LOCATION = ['headers']

    # Rate Limiting Configuration
    RATELIMIT_ENABLED = os.getenv('RATELIMIT_ENABLED', 'True') == 'True'
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')
    if FLASK_ENV == 'production' and RATELIMIT_ENABLED and RATELIMIT_STORAGE_URI.strip().lower() == 'memory://':
        raise RuntimeError(
            "RATELIMIT_STORAGE_URI must use a shared backend (e.g., Redis) in production."
        )
    RATELIMIT_DEFAULT = os.getenv('RATELIMIT_DEFAULT', '2000 per day, 500 per hour')
    RATELIMIT_HEADERS_ENABLED = True
    SEND_RATE_LIMIT = os.getenv('SEND_RATE_LIMIT', '120 per minute')
    BROADCAST_RATE_LIMIT = os.getenv('BROADCAST_RATE_LIMIT', '10 per minute')

    # Messaging provider
    MESSAGING_PROVIDER = os.getenv('MESSAGING_PROVIDER', 'disabled')  # twilio | console | disabled
    TWILIO_ACCOUNT_SID = os.getenv('TWILIO_ACCOUNT_SID', '')
    TWILIO_AUTH_TOKEN = os.getenv('TWILIO_AUTH_TOKEN', '')
    TWILIO_BASE_URL = os.getenv('TWILIO_BASE_URL', 'https://api.twilio.com/2010-04-01')
    # Public webhook URL as registered with the provider (signature base string)
    TWILIO_WEBHOOK_URL = os.getenv('TWILIO_WEBHOOK_URL', '')
    PROVIDER_TIMEOUT_SECONDS = _env_int('PROVIDER_TIMEOUT_SECONDS', 15)

    # Dispatch policy
    DISPATCH_CHANNEL_TYPE = os.getenv('DISPATCH_CHANNEL_TYPE', 'whatsapp')
    DISPATCH_TIMEZONE = os.getenv('DISPATCH_TIMEZONE', 'UTC')
    DISPATCH_RETRY_BACKOFF_SECONDS = _env_int('DISPATCH_RETRY_BACKOFF_SECONDS', 60)
    DISPATCH_DEFAULT_MAX_PER_DAY = _env_int('DISPATCH_DEFAULT_MAX_PER_DAY', 20)

    # Broadcast fan-out
    BROADCAST_BATCH_SIZE = _env_int('BROADCAST_BATCH_SIZE', 50)
    BROADCAST_RATE = os.getenv('BROADCAST_RATE', '10/second')
    BROADCAST_WORKERS = _env_int('BROADCAST_WORKERS', 4)
    BROADCAST_MAX_SECONDS = _env_int('BROADCAST_MAX_SECONDS', 300)

    # Application
    APP_NAME = os.getenv('APP_NAME', 'Ops Notify')
    CORS_ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.getenv('CORS_ALLOWED_ORIGINS', 'http://localhost:5173').split(',')
        if origin.strip()
    ]

    @staticmethod
    def init_app(app):
        """Initialize application configuration"""
        try:
            ZoneInfo(app.config.get('DISPATCH_TIMEZONE') or 'UTC')
        except (ZoneInfoNotFoundError, ValueError) as exc:
            app.logger.warning(
                "DISPATCH_TIMEZONE '%s' is invalid (%s); using UTC",
                app.config.get('DISPATCH_TIMEZONE'),
                exc,
            )
            app.config['DISPATCH_TIMEZONE'] = 'UTC'

        if (app.config.get('MESSAGING_PROVIDER') or '').lower() == 'twilio' and not app.config.get('TWILIO_AUTH_TOKEN'):
            app.logger.warning("MESSAGING_PROVIDER=twilio but TWILIO_AUTH_TOKEN is not set")


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True
    MESSAGING_PROVIDER = os.getenv('MESSAGING_PROVIDER', 'console')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    MESSAGING_PROVIDER = 'disabled'
    JWT_SECRET_KEY = 'test-secret'


# Config dictionary
config_by_name = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
