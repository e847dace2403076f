"""
Dealer bridge configuration with fail-fast validation.

All values are validated once at import time. Production deployments
must provide the game server, dealer credentials and service token.
"""
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from sqlalchemy.pool import StaticPool

from .config_validator import validate_production_config

class Config:
    """Bridge configuration built from validated environment values."""

    _validated_config = validate_production_config()

    # Database Configuration
    SQLALCHEMY_DATABASE_URI = _validated_config['SQLALCHEMY_DATABASE_URI']
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Operating mode: 'active' drives the table, 'passive' only observes
    DEALER_MODE = _validated_config['DEALER_MODE']

    # Upstream game server
    GAME_SERVER_BASE_URL = _validated_config['GAME_SERVER_BASE_URL']
    GAME_SERVER_WS_URL = _validated_config['GAME_SERVER_WS_URL']
    UPSTREAM_HTTP_TIMEOUT = _validated_config['UPSTREAM_HTTP_TIMEOUT']
    DEALER_ID = _validated_config['DEALER_ID']
    DEALER_KEY = _validated_config['DEALER_KEY']
    DEFAULT_TABLE = _validated_config['DEFAULT_TABLE']

    # Bridge timers
    HEARTBEAT_INTERVAL_SECONDS = _validated_config['HEARTBEAT_INTERVAL_SECONDS']
    HEARTBEAT_MAX_MISSES = _validated_config['HEARTBEAT_MAX_MISSES']
    RECONNECT_DELAY_SECONDS = _validated_config['RECONNECT_DELAY_SECONDS']
    RECONNECT_MAX_ATTEMPTS = _validated_config['RECONNECT_MAX_ATTEMPTS']

    # Forward queue
    FORWARDING_ENABLED = _validated_config['FORWARDING_ENABLED']
    FORWARDING_URL = _validated_config['FORWARDING_URL']
    FORWARDING_INTERVAL_SECONDS = _validated_config['FORWARDING_INTERVAL_SECONDS']
    FORWARDING_MAX_RETRIES = _validated_config['FORWARDING_MAX_RETRIES']

    # Service API Token protecting the admin endpoints
    SERVICE_API_TOKEN = _validated_config['SERVICE_API_TOKEN']

    # CORS Configuration
    CORS_ORIGINS_LIST = _validated_config['CORS_ORIGINS']

    # Flask Debug Mode
    DEBUG = _validated_config['DEBUG']

    # Forwarder thread and the startup dealer login run with the app
    START_BACKGROUND_WORKERS = True


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # One shared in-memory connection so worker threads see the same tables
    SQLALCHEMY_ENGINE_OPTIONS = {
        'connect_args': {'check_same_thread': False},
        'poolclass': StaticPool,
    }
    DEALER_MODE = 'active'
    GAME_SERVER_BASE_URL = 'http://game.test:4000'
    GAME_SERVER_WS_URL = 'ws://game.test:4000'
    DEALER_ID = 'operator_test'
    DEALER_KEY = 'test-key'
    DEFAULT_TABLE = '1'
    FORWARDING_ENABLED = False
    FORWARDING_URL = 'http://forward.test/rounds'
    SERVICE_API_TOKEN = 'test-service-token'
    CORS_ORIGINS_LIST = []
    DEBUG = False
    START_BACKGROUND_WORKERS = False
