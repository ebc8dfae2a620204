"""
Configuration loading and management for LDAP Group Ops.

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

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    REQUIRED_LDAP_FIELDS = ('server_url', 'bind_dn', 'bind_password')

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
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
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

        ldap_config = self.config.get('ldap') or {}
        for field in self.REQUIRED_LDAP_FIELDS:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        server_url = str(ldap_config.get('server_url', ''))
        if server_url and not server_url.lower().startswith(('ldap://', 'ldaps://')):
            errors.append(f"ldap.server_url must start with ldap:// or ldaps://: {server_url}")

        if ldap_config.get('use_ssl') and ldap_config.get('start_tls'):
            errors.append("ldap.use_ssl and ldap.start_tls cannot both be enabled")

        page_size = ldap_config.get('page_size')
        if page_size is not None and (not isinstance(page_size, int) or page_size <= 0):
            errors.append(f"ldap.page_size must be a positive integer: {page_size}")

        job_config = self.config.get('job') or {}
        max_items = job_config.get('max_items')
        if max_items is not None and (not isinstance(max_items, int) or max_items <= 0):
            errors.append(f"job.max_items must be a positive integer: {max_items}")

        error_config = self.config.get('error_handling') or {}
        for field in ('max_retries', 'retry_wait_seconds'):
            value = error_config.get(field)
            if value is not None and (not isinstance(value, (int, float)) or value < 0):
                errors.append(f"error_handling.{field} must be a non-negative number: {value}")

        notification_config = self.config.get('notifications') or {}
        if notification_config.get('enable_email'):
            for field in ('smtp_server', 'email_from', 'email_to'):
                if not notification_config.get(field):
                    errors.append(f"Missing notification field: {field} (required when enable_email is true)")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'base_dn': '',
            'group_base_dn': '',
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 30,
            'page_size': 500,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)
        # ldaps:// URLs imply SSL
        ldap_config.setdefault('use_ssl', str(ldap_config.get('server_url', '')).lower().startswith('ldaps://'))

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING',
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        job_config = self.config.setdefault('job', {})
        job_config.setdefault('max_items', 50)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_warning': False,
            'smtp_port': 587,
            'smtp_tls': True,
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


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
