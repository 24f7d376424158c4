"""
Configuration Management for the Portal Client.

This module resolves the portal base URL and origin, the HMAC signing
settings, the identity-provider settings and the session security level from
a configuration file and environment variables.
"""

import os
import json
import logging
from configparser import ConfigParser
from pathlib import Path
from typing import Optional, Dict, Any, List
from urllib.parse import urlparse

from portal_shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / '.portal-client' / 'client.conf'

_REQUIRED_SETTINGS = [
    'hmac.client_id',
    'hmac.shared_secret',
    'hmac.api_key',
    'portal.base_url',
    'portal.origin',
]


class PortalConfiguration:
    """
    Configuration manager for the Portal Client.

    Supports configuration from:
    1. Overrides set at runtime (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'PORTAL_BASE_URL': ('portal', 'base_url'),
        'PORTAL_ORIGIN': ('portal', 'origin'),
        'PORTAL_ENVIRONMENT': ('portal', 'environment'),
        'PORTAL_PRODUCTION_HOSTS': ('portal', 'production_hosts'),
        'PORTAL_CLIENT_ID': ('hmac', 'client_id'),
        'PORTAL_SHARED_SECRET': ('hmac', 'shared_secret'),
        'PORTAL_API_KEY': ('hmac', 'api_key'),
        'PORTAL_GRAPH_URL': ('identity', 'graph_url'),
        'PORTAL_SCOPES': ('identity', 'scopes'),
        'PORTAL_REFRESH_THRESHOLD': ('identity', 'refresh_threshold_seconds'),
        'PORTAL_SECURITY_LEVEL': ('session', 'security_level'),
        'PORTAL_SESSION_DIR': ('session', 'storage_dir'),
        'PORTAL_TIMEOUT': ('server', 'timeout'),
        'PORTAL_RETRY_ATTEMPTS': ('server', 'retry_attempts'),
        'PORTAL_LOG_LEVEL': ('logging', 'level'),
        'PORTAL_LOG_FORMAT': ('logging', 'format'),
        'PORTAL_LOG_FILE': ('logging', 'file'),
    }

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self._config_file = config_file or str(DEFAULT_CONFIG_PATH)
        self._environ = os.environ if environ is None else environ
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.info(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser(interpolation=None)
        try:
            config.read(self._config_file)
        except Exception as e:
            raise ConfigurationError(
                f"Failed to parse configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = self._config_data.setdefault(section_name, {})
            for key, value in config[section_name].items():
                # Try to parse as JSON for complex values
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = self._environ.get(env_var)
            if value is None:
                continue

            section_data = self._config_data.setdefault(section, {})
            # Identifiers and secrets stay strings even when they look numeric
            if section in ('portal', 'hmac'):
                section_data[key] = value
            elif value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            elif value.isdigit():
                section_data[key] = int(value)
            else:
                section_data[key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'portal': {
                'base_url': 'http://localhost:8080',
                'origin': 'http://localhost:3000',
                'environment': 'development',
                'production_hosts': [],
            },
            'hmac': {
                'client_id': None,
                'shared_secret': None,
                'api_key': None,
            },
            'identity': {
                'graph_url': 'https://graph.microsoft.com/v1.0/me',
                'scopes': ['User.Read'],
                'refresh_threshold_seconds': 300,
                'validation_timeout': 10.0,
            },
            'session': {
                'security_level': 'tab',
                'storage_dir': None,
                'quota_bytes': 5 * 1024 * 1024,
            },
            'server': {
                'timeout': 30.0,
                'retry_attempts': 3,
                'retry_delay': 1.0,
            },
            'logging': {
                'level': 'INFO',
                'format': 'standard',
                'file': None,
                'audit_file': None,
            },
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                section_data.setdefault(key, default_value)

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        value = self._config_data.get(section, {}).get(config_key, default)
        return default if value is None else value

    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation ('section.key')."""
        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """Set configuration override (highest priority)."""
        self._overrides[key] = value

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    def validate(self) -> None:
        """
        Check that every setting needed to sign requests is present.

        Raises:
            ConfigurationError: A required setting is missing or empty
        """
        for key in _REQUIRED_SETTINGS:
            value = self.get_config(key)
            if value is None or not str(value).strip():
                raise ConfigurationError(
                    f"Missing required setting: {key}",
                    error_code=ErrorCode.CONFIG_MISSING_REQUIRED_SETTING,
                    config_key=key
                )

        level = self.get_security_level()
        # Imported here to keep configuration loadable without the auth stack
        from portal_client.auth.session_store import SessionTier
        try:
            SessionTier.parse(level)
        except ValueError as e:
            raise ConfigurationError(
                str(e),
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='session.security_level',
                cause=e
            )

    # Convenience methods for common configuration values

    def get_config_file_path(self) -> str:
        return self._config_file

    def get_base_url(self) -> str:
        return str(self.get_config('portal.base_url')).rstrip('/')

    def get_origin(self) -> str:
        return self.get_config('portal.origin')

    def get_environment(self) -> str:
        return str(self.get_config('portal.environment', 'development')).lower()

    def get_production_hosts(self) -> List[str]:
        return self._as_list(self.get_config('portal.production_hosts', []))

    def is_production(self) -> bool:
        """
        Check whether the client runs against a production deployment.

        True when the environment is ``production`` or the base URL's host
        is one of the configured production hosts.
        """
        if self.get_environment() == 'production':
            return True
        hostname = urlparse(self.get_base_url()).hostname
        return bool(hostname) and hostname in self.get_production_hosts()

    def get_client_id(self) -> Optional[str]:
        return self._as_str(self.get_config('hmac.client_id'))

    def get_shared_secret(self) -> Optional[str]:
        return self._as_str(self.get_config('hmac.shared_secret'))

    def get_api_key(self) -> Optional[str]:
        return self._as_str(self.get_config('hmac.api_key'))

    def get_graph_url(self) -> str:
        return self.get_config('identity.graph_url')

    def get_scopes(self) -> List[str]:
        return self._as_list(self.get_config('identity.scopes', []))

    def get_refresh_threshold_seconds(self) -> float:
        return float(self.get_config('identity.refresh_threshold_seconds', 300))

    def get_validation_timeout(self) -> float:
        return float(self.get_config('identity.validation_timeout', 10.0))

    def get_security_level(self) -> str:
        return str(self.get_config('session.security_level', 'tab'))

    def get_session_storage_dir(self) -> Optional[str]:
        return self.get_config('session.storage_dir')

    def get_session_quota_bytes(self) -> int:
        return int(self.get_config('session.quota_bytes', 5 * 1024 * 1024))

    def get_server_timeout(self) -> float:
        return float(self.get_config('server.timeout', 30.0))

    def get_retry_attempts(self) -> int:
        return int(self.get_config('server.retry_attempts', 3))

    def get_retry_delay(self) -> float:
        return float(self.get_config('server.retry_delay', 1.0))

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')

    def describe(self) -> Dict[str, Any]:
        """Non-secret view of the effective configuration."""
        return {
            'config_file': self._config_file,
            'base_url': self.get_base_url(),
            'origin': self.get_origin(),
            'environment': self.get_environment(),
            'is_production': self.is_production(),
            'client_id': self.get_client_id(),
            'shared_secret_set': bool(self.get_shared_secret()),
            'api_key_set': bool(self.get_api_key()),
            'graph_url': self.get_graph_url(),
            'scopes': self.get_scopes(),
            'security_level': self.get_security_level(),
        }

    @staticmethod
    def _as_list(value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.replace(',', ' ').split() if item.strip()]
        return [str(item) for item in value]

    @staticmethod
    def _as_str(value: Any) -> Optional[str]:
        return None if value is None else str(value)
