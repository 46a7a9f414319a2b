"""
Configuration loading and management for LDAP Reconcile.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. It also turns the ``reconcile`` section into the
options object consumed by the planner.
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, FrozenSet

from cryptography.fernet import Fernet, InvalidToken

from ldap_reconcile.models import ActionKind

logger = logging.getLogger(__name__)

SECRET_KEY_ENV = 'LDAP_RECONCILE_SECRET_KEY'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass(frozen=True)
class ReconcileOptions:
    """Flags that control which changes the planner is allowed to emit."""

    create_missing_containers: bool = True
    overwrite_existing: bool = True
    allow_move: bool = False
    delete_not_in_import: bool = False
    default_container: str = ''
    cleanup_root: str = ''
    default_password: Optional[str] = None
    disabled_actions: FrozenSet[ActionKind] = field(default_factory=frozenset)
    auto_group_membership: bool = False
    max_key_length: Optional[int] = None
    key_attribute: str = 'sAMAccountName'

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ReconcileOptions':
        """
        Build options from a loaded configuration dictionary.

        Args:
            config: Full configuration (as returned by ``load_config``)

        Returns:
            ReconcileOptions instance

        Raises:
            ConfigurationError: If a disabled action name is unknown
        """
        section = config.get('reconcile', {})
        disabled = set()
        for name in section.get('disabled_actions') or []:
            try:
                disabled.add(ActionKind.from_name(name))
            except ValueError as e:
                raise ConfigurationError(str(e))

        default_container = section.get('default_container') or config.get('ldap', {}).get('base_dn') or ''
        return cls(
            create_missing_containers=section.get('create_missing_containers', True),
            overwrite_existing=section.get('overwrite_existing', True),
            allow_move=section.get('allow_move', False),
            delete_not_in_import=section.get('delete_not_in_import', False),
            default_container=default_container,
            cleanup_root=section.get('cleanup_root') or default_container,
            default_password=section.get('default_password'),
            disabled_actions=frozenset(disabled),
            auto_group_membership=section.get('auto_group_membership', False),
            max_key_length=section.get('max_key_length'),
            key_attribute=config.get('ldap', {}).get('key_attribute', 'sAMAccountName'),
        )

    def allows(self, kind: ActionKind) -> bool:
        return kind not in self.disabled_actions


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'reconcile.default_password': 'RECONCILE_DEFAULT_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    VALID_ERROR_POLICIES = ('skip', 'abort')

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
        self._decrypt_secrets()
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

    def _decrypt_secrets(self):
        """Decrypt ``bind_password_encrypted`` when no plain bind password is set."""
        ldap_config = self.config.get('ldap') or {}
        token = ldap_config.get('bind_password_encrypted')
        if not token or ldap_config.get('bind_password'):
            return

        key = os.getenv(SECRET_KEY_ENV)
        if not key:
            raise ConfigurationError(
                f"ldap.bind_password_encrypted is set but {SECRET_KEY_ENV} is not defined"
            )
        ldap_config['bind_password'] = decrypt_value(token, key)
        logger.debug("Decrypted LDAP bind password")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap', {})
        required_ldap_fields = ['server_url', 'bind_dn', 'bind_password']
        for field_name in required_ldap_fields:
            if not ldap_config.get(field_name):
                errors.append(f"Missing required LDAP field: {field_name}")

        for section, key in (('snapshot', 'batch_size'), ('snapshot', 'max_workers'),
                             ('execution', 'max_workers'), ('ldap', 'page_size')):
            value = self.config.get(section, {}).get(key)
            if value is not None and (not isinstance(value, int) or value < 1):
                errors.append(f"{section}.{key} must be a positive integer")

        suppression = self.config.get('connection', {}).get('retry_suppression_seconds')
        if suppression is not None and (not isinstance(suppression, (int, float)) or suppression < 0):
            errors.append("connection.retry_suppression_seconds must be a non-negative number")

        policy = self.config.get('execution', {}).get('error_policy')
        if policy is not None and policy not in self.VALID_ERROR_POLICIES:
            errors.append(f"execution.error_policy must be one of {', '.join(self.VALID_ERROR_POLICIES)}")

        reconcile = self.config.get('reconcile', {})
        for name in reconcile.get('disabled_actions') or []:
            try:
                ActionKind.from_name(str(name))
            except ValueError:
                errors.append(f"Unknown action kind in reconcile.disabled_actions: {name}")

        max_key_length = reconcile.get('max_key_length')
        if max_key_length is not None and (not isinstance(max_key_length, int) or max_key_length < 3):
            errors.append("reconcile.max_key_length must be an integer of at least 3")

        if not reconcile.get('default_container') and not ldap_config.get('base_dn'):
            errors.append("Either reconcile.default_container or ldap.base_dn must be set")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'base_dn': '',
            'key_attribute': 'sAMAccountName',
            'user_object_filter': '(&(objectClass=user)(objectCategory=person))',
            'group_object_filter': '(objectClass=group)',
            'container_object_filter': '(|(objectClass=organizationalUnit)(objectClass=container))',
            'connection_timeout': 10,
            'receive_timeout': 30,
            'page_size': 1000,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        connection_defaults = {
            'retry_suppression_seconds': 300,
            'bind_attempts': 2,
            'bind_retry_wait_seconds': 1,
            'bind_retry_backoff': 2.0,
        }
        connection_config = self.config.setdefault('connection', {})
        for key, value in connection_defaults.items():
            connection_config.setdefault(key, value)

        snapshot_config = self.config.setdefault('snapshot', {})
        snapshot_config.setdefault('batch_size', 100)
        snapshot_config.setdefault('max_workers', 4)

        execution_config = self.config.setdefault('execution', {})
        execution_config.setdefault('error_policy', 'abort')
        execution_config.setdefault('max_workers', 1)

        reconcile_defaults = {
            'create_missing_containers': True,
            'overwrite_existing': True,
            'allow_move': False,
            'delete_not_in_import': False,
            'default_container': ldap_config.get('base_dn', ''),
            'default_password': None,
            'disabled_actions': [],
            'auto_group_membership': False,
            'max_key_length': None,
        }
        reconcile_config = self.config.setdefault('reconcile', {})
        for key, value in reconcile_defaults.items():
            reconcile_config.setdefault(key, value)
        reconcile_config.setdefault('cleanup_root', reconcile_config['default_container'])

        comparison_config = self.config.setdefault('comparison', {})
        comparison_config.setdefault('excluded_attributes', [])
        comparison_config.setdefault('case_sensitive_attributes', [])

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


def encrypt_value(plaintext: str, key: str) -> str:
    """
    Encrypt a secret for storage in the configuration file.

    Args:
        plaintext: Secret to encrypt
        key: Fernet key (urlsafe base64, as produced by ``generate_key``)

    Returns:
        Fernet token as text
    """
    return Fernet(key.encode() if isinstance(key, str) else key).encrypt(plaintext.encode('utf-8')).decode('ascii')


def decrypt_value(token: str, key: str) -> str:
    """
    Decrypt a secret produced by ``encrypt_value``.

    Raises:
        ConfigurationError: If the key is malformed or the token does not match it
    """
    try:
        fernet = Fernet(key.encode() if isinstance(key, str) else key)
        return fernet.decrypt(token.encode('ascii')).decode('utf-8')
    except (InvalidToken, ValueError) as e:
        raise ConfigurationError(f"Unable to decrypt configuration secret: {type(e).__name__}")


def generate_key() -> str:
    """Generate a new key for ``encrypt_value``."""
    return Fernet.generate_key().decode('ascii')


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
