"""
Configuration validation and startup checks for the dealer bridge.

Implements fail-fast validation so the bridge never starts against a
half-configured game server, an unknown operating mode or a default
service token in production.
"""

import os
import sys
import warnings
from typing import List, Tuple, Optional


VALID_DEALER_MODES = ('active', 'passive')
DEFAULT_SERVICE_TOKEN = 'default_service_token_please_change'


class ConfigValidationError(Exception):
    """Raised when critical configuration is missing or invalid."""
    pass


def _env_flag(var_name: str, default: str = 'False') -> bool:
    return os.getenv(var_name, default).lower() in ('true', '1', 't')


class ConfigValidator:
    """Validates bridge configuration and enforces production safety."""

    def __init__(self, is_production: bool = None):
        """
        Initialize the configuration validator.

        Args:
            is_production: If None, production is assumed only when FLASK_ENV=production
        """
        if is_production is None:
            is_production = os.getenv('FLASK_ENV', '').lower() == 'production'

        self.is_production = is_production
        self.is_testing = _env_flag('TESTING')
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate_required_env_var(self, var_name: str, description: str = None) -> Optional[str]:
        """
        Validate that a required environment variable is set.

        Returns:
            The environment variable value if set, None otherwise
        """
        value = os.getenv(var_name)
        if not value:
            desc = description or var_name
            if self.is_production:
                self.errors.append(f"CRITICAL: {desc} ({var_name}) must be set in production environment")
            else:
                self.warnings.append(f"WARNING: {desc} ({var_name}) not set - using development fallback")
        return value

    def _int_env(self, var_name: str, default: int, minimum: int = 0) -> int:
        raw = os.getenv(var_name, str(default))
        try:
            value = int(raw)
        except ValueError:
            raise ConfigValidationError(f"{var_name} must be an integer, got '{raw}'")
        if value < minimum:
            raise ConfigValidationError(f"{var_name} must be >= {minimum}, got {value}")
        return value

    def _float_env(self, var_name: str, default: float, minimum: float = 0.0) -> float:
        raw = os.getenv(var_name, str(default))
        try:
            value = float(raw)
        except ValueError:
            raise ConfigValidationError(f"{var_name} must be a number, got '{raw}'")
        if value <= minimum:
            raise ConfigValidationError(f"{var_name} must be greater than {minimum}, got {value}")
        return value

    def validate_mode(self) -> str:
        """Validate the operating mode. An unknown mode is fatal in every environment."""
        mode = os.getenv('DEALER_MODE', 'active').strip().lower()
        if mode not in VALID_DEALER_MODES:
            raise ConfigValidationError(
                f"DEALER_MODE must be one of {', '.join(VALID_DEALER_MODES)}, got '{mode}'"
            )
        return mode

    def validate_database_config(self) -> str:
        """Validate database configuration."""
        database_url = os.getenv('DATABASE_URL')

        if database_url:
            if not database_url.startswith(('postgresql://', 'postgresql+psycopg2://', 'sqlite://')):
                self.errors.append("CRITICAL: DATABASE_URL must use a supported database driver")
            return database_url

        if self.is_production:
            self.errors.append("CRITICAL: DATABASE_URL must be set in production environment")
            return ''

        self.warnings.append("DATABASE_URL not set - using local SQLite file ./data/dealer.sqlite")
        return 'sqlite:///./data/dealer.sqlite'

    def validate_game_server_config(self) -> Tuple[str, str, int]:
        """Validate the upstream game server location and derive its HTTP and WebSocket base URLs."""
        host = self.validate_required_env_var('GAME_HOST', 'Game server host')
        port = self._int_env('GAME_PORT', 4000, minimum=1)
        if not host:
            host = 'localhost'
        if '://' in host:
            self.errors.append("CRITICAL: GAME_HOST must be a bare host name without scheme")

        base_url = f'http://{host}:{port}'
        ws_url = f'ws://{host}:{port}'
        timeout = self._int_env('UPSTREAM_HTTP_TIMEOUT', 10, minimum=1)
        return base_url, ws_url, timeout

    def validate_dealer_credentials(self) -> Tuple[str, str, str]:
        """Validate the dealer credentials used for the session exchange."""
        dealer_id = self.validate_required_env_var('DEALER_ID', 'Dealer ID')
        dealer_key = self.validate_required_env_var('DEALER_KEY', 'Dealer key')

        if not self.is_production:
            dealer_id = dealer_id or 'operator_001'
            dealer_key = dealer_key or '6001'

        default_table = os.getenv('DEFAULT_TABLE', '1').strip()
        if not default_table:
            raise ConfigValidationError("DEFAULT_TABLE must not be empty")

        return dealer_id, dealer_key, default_table

    def validate_bridge_config(self) -> dict:
        """Validate heartbeat and reconnect timing."""
        return {
            'HEARTBEAT_INTERVAL_SECONDS': self._float_env('HEARTBEAT_INTERVAL_SECONDS', 1.0),
            'HEARTBEAT_MAX_MISSES': self._int_env('HEARTBEAT_MAX_MISSES', 5, minimum=1),
            'RECONNECT_DELAY_SECONDS': self._float_env('RECONNECT_DELAY_SECONDS', 3.0),
            'RECONNECT_MAX_ATTEMPTS': self._int_env('RECONNECT_MAX_ATTEMPTS', 20, minimum=1),
        }

    def validate_forwarding_config(self) -> dict:
        """Validate the forward queue settings."""
        enabled = _env_flag('FORWARDING_ENABLED')
        url = os.getenv('FORWARDING_URL', '')

        if enabled and not url:
            if self.is_production:
                self.errors.append("CRITICAL: FORWARDING_URL must be set when FORWARDING_ENABLED is true")
            else:
                self.warnings.append("FORWARDING_ENABLED without FORWARDING_URL - forwarding disabled")
                enabled = False
        if url and not url.startswith(('http://', 'https://')):
            self.errors.append(f"CRITICAL: FORWARDING_URL '{url}' must be an http(s) URL")

        return {
            'FORWARDING_ENABLED': enabled,
            'FORWARDING_URL': url,
            'FORWARDING_INTERVAL_SECONDS': self._float_env('FORWARDING_INTERVAL_SECONDS', 30.0),
            'FORWARDING_MAX_RETRIES': self._int_env('FORWARDING_MAX_RETRIES', 3, minimum=1),
        }

    def validate_service_config(self) -> str:
        """Validate service API token configuration."""
        service_token = os.getenv('SERVICE_API_TOKEN')

        if not service_token:
            if self.is_production:
                self.errors.append(
                    "CRITICAL: SERVICE_API_TOKEN must be set in production to protect the admin API"
                )
                service_token = None
            else:
                service_token = DEFAULT_SERVICE_TOKEN
                self.warnings.append(
                    "SERVICE_API_TOKEN not set - using development default. "
                    "Set a strong, unique token for production!"
                )
        elif service_token == DEFAULT_SERVICE_TOKEN:
            if self.is_production:
                self.errors.append(
                    "CRITICAL: Default SERVICE_API_TOKEN detected in production. "
                    "Set a strong, unique SERVICE_API_TOKEN environment variable."
                )
            else:
                self.warnings.append("Using default SERVICE_API_TOKEN in development")

        return service_token

    def validate_cors_config(self) -> List[str]:
        """Validate CORS configuration."""
        cors_origins = os.getenv('CORS_ORIGINS', '')

        if not cors_origins and self.is_production:
            self.errors.append(
                "CRITICAL: CORS_ORIGINS must be set in production to specify the dealer console origins"
            )
            return []

        if cors_origins:
            origins = [origin.strip() for origin in cors_origins.split(',') if origin.strip()]
            for origin in origins:
                if not origin.startswith(('http://', 'https://')):
                    self.warnings.append(f"CORS origin '{origin}' should include protocol (http:// or https://)")
            return origins

        return []

    def validate_all(self) -> dict:
        """
        Validate all configuration settings.

        Returns:
            Dictionary containing validated configuration values

        Raises:
            ConfigValidationError: If critical configuration is missing or invalid
        """
        config = {}

        try:
            config['DEALER_MODE'] = self.validate_mode()
            config['SQLALCHEMY_DATABASE_URI'] = self.validate_database_config()
            (config['GAME_SERVER_BASE_URL'], config['GAME_SERVER_WS_URL'],
             config['UPSTREAM_HTTP_TIMEOUT']) = self.validate_game_server_config()
            config['DEALER_ID'], config['DEALER_KEY'], config['DEFAULT_TABLE'] = self.validate_dealer_credentials()
            config.update(self.validate_bridge_config())
            config.update(self.validate_forwarding_config())
            config['SERVICE_API_TOKEN'] = self.validate_service_config()
            config['CORS_ORIGINS'] = self.validate_cors_config()

            config['DEBUG'] = _env_flag('FLASK_DEBUG')

            if self.is_production and config['DEBUG']:
                self.errors.append("CRITICAL: DEBUG mode must be disabled in production (set FLASK_DEBUG=False)")

            if self.errors:
                error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in self.errors)
                if self.warnings:
                    error_msg += "\n\nWarnings:\n" + "\n".join(f"  - {warning}" for warning in self.warnings)
                raise ConfigValidationError(error_msg)

            if self.warnings and not self.is_testing:
                for warning in self.warnings:
                    warnings.warn(warning, UserWarning)

            return config

        except Exception as e:
            if isinstance(e, ConfigValidationError):
                raise
            else:
                raise ConfigValidationError(f"Configuration validation error: {str(e)}") from e


def validate_production_config() -> dict:
    """
    Validate configuration with fail-fast behavior.

    Returns:
        Dictionary of validated configuration values

    Raises:
        SystemExit: If validation fails during startup
    """
    try:
        validator = ConfigValidator()
        return validator.validate_all()
    except ConfigValidationError as e:
        print("\nCONFIGURATION VALIDATION FAILED\n", file=sys.stderr)
        print(str(e), file=sys.stderr)
        print("\nHow to fix:", file=sys.stderr)
        print("1. Set DEALER_MODE to 'active' or 'passive'", file=sys.stderr)
        print("2. Set GAME_HOST, DEALER_ID and DEALER_KEY for the game server", file=sys.stderr)
        print("3. Review the .env file against the deployment checklist", file=sys.stderr)
        print("\nApplication startup ABORTED\n", file=sys.stderr)

        sys.exit(1)
