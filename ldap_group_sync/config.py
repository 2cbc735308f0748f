"""
Configuration loading and management for LDAP Group Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive or deployment-specific fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'store.url': 'GROUP_SYNC_STORE_URL',
    }

    STORE_BACKENDS = ('sql', 'memory')

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap', {})
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        page_size = ldap_config.get('page_size')
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
            errors.append(f"ldap.page_size must be a positive integer, got {page_size!r}")

        attribute_map = ldap_config.get('attribute_map')
        if not isinstance(attribute_map, dict):
            errors.append("ldap.attribute_map must be a mapping")
        else:
            for field in ('directory_id', 'account_name', 'distinguished_name'):
                if not attribute_map.get(field):
                    errors.append(f"ldap.attribute_map is missing an attribute for {field}")

        store_config = self.config.get('store', {})
        backend = store_config.get('backend')
        if backend not in self.STORE_BACKENDS:
            errors.append(f"store.backend must be one of {', '.join(self.STORE_BACKENDS)}, got {backend!r}")
        if backend == 'sql' and not store_config.get('url'):
            errors.append("Missing required store field: url")
        batch_size = store_config.get('batch_size')
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
            errors.append(f"store.batch_size must be a positive integer, got {batch_size!r}")

        sync_config = self.config.get('sync', {})
        if not isinstance(sync_config.get('destructive'), bool):
            errors.append("sync.destructive must be true or false")
        max_runtime = sync_config.get('max_runtime_seconds')
        if not isinstance(max_runtime, (int, float)) or max_runtime < 0:
            errors.append(f"sync.max_runtime_seconds must be zero or positive, got {max_runtime!r}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        section_defaults = {
            'ldap': {
                'group_base_dn': '',
                'group_filter': '(objectClass=group)',
                'page_size': 1000,
                'attribute_map': {
                    'directory_id': 'objectGUID',
                    'account_name': 'sAMAccountName',
                    'display_name': 'name',
                    'description': 'description',
                    'distinguished_name': 'distinguishedName',
                },
            },
            'store': {
                'backend': 'sql',
                'url': 'sqlite:///groups.db',
                'batch_size': 500,
                'echo': False,
            },
            'sync': {
                'destructive': False,
                'lock_file': 'group_sync.lock',
                'max_runtime_seconds': 0,
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7,
                'console_output': True,
                'console_level': 'WARNING',
            },
            'error_handling': {
                'max_retries': 3,
                'retry_wait_seconds': 5,
                'retry_backoff': 1.0,
            },
            'notifications': {
                'enable_email': False,
                'email_on_failure': True,
                'email_on_success': False,
                'smtp_port': 587,
                'smtp_tls': True,
            },
        }

        for section, defaults in section_defaults.items():
            section_config = self.config.get(section)
            if not isinstance(section_config, dict):
                section_config = self.config[section] = {}
            for key, value in defaults.items():
                section_config.setdefault(key, value)

        # A partial attribute map only overrides the attributes it names
        attribute_map = self.config['ldap']['attribute_map']
        if isinstance(attribute_map, dict):
            merged = dict(section_defaults['ldap']['attribute_map'])
            merged.update(attribute_map)
            self.config['ldap']['attribute_map'] = merged

        # The LDAP client reads its retry settings from its own section
        self.config['ldap'].setdefault('error_handling', self.config['error_handling'])


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
