# Standard library (Python built-in modules)
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from secret_rotation.errors import ConfigurationError


# ============================================================================
# Environment variable keys
# ============================================================================
# All optional: every key has a default below. Values are set on the Lambda
# function in IaC (Terraform/CloudFormation/CDK).
ENV_PASSWORD_LENGTH = 'PASSWORD_LENGTH'
ENV_EXCLUDE_CHARACTERS = 'EXCLUDE_CHARACTERS'
ENV_DB_ENGINE = 'DB_ENGINE'
ENV_DB_CONNECTION_TIMEOUT = 'DB_CONNECTION_TIMEOUT'
ENV_DB_CA_BUNDLE_PATH = 'DB_CA_BUNDLE_PATH'
ENV_DB_SSL = 'DB_SSL'
ENV_DB_PASSWORD_PROPAGATION_WAIT = 'DB_PASSWORD_PROPAGATION_WAIT'
ENV_MASTER_SECRET_ARN = 'MASTER_SECRET_ARN'
ENV_SECRETS_MANAGER_ENDPOINT = 'SECRETS_MANAGER_ENDPOINT'
ENV_LOG_LEVEL = 'LOG_LEVEL'

# ============================================================================
# Default values
# ============================================================================
DEFAULT_PASSWORD_LENGTH = 20
DEFAULT_EXCLUDE_CHARACTERS = '/@"\'\\'
DEFAULT_DB_ENGINE = 'postgres'
DEFAULT_CONNECTION_TIMEOUT = 30
DEFAULT_DB_WAIT_TIME = 0
DEFAULT_LOG_LEVEL = 'INFO'

ENGINE_POSTGRES = 'postgres'
ENGINE_MYSQL = 'mysql'

# Spellings seen in the "engine" field of Secrets Manager database secrets
ENGINE_ALIASES = {
    'postgres': ENGINE_POSTGRES,
    'postgresql': ENGINE_POSTGRES,
    'aurora-postgresql': ENGINE_POSTGRES,
    'mysql': ENGINE_MYSQL,
    'mariadb': ENGINE_MYSQL,
    'aurora': ENGINE_MYSQL,
    'aurora-mysql': ENGINE_MYSQL,
}

VALID_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off')


def normalize_engine(engine: str) -> str:
    """Map an engine spelling to ENGINE_POSTGRES or ENGINE_MYSQL."""
    try:
        return ENGINE_ALIASES[engine.strip().lower()]
    except KeyError:
        raise ConfigurationError(f"Unsupported database engine: {engine!r}")


@dataclass(frozen=True)
class RotationSettings:
    """Runtime settings for one handler invocation."""

    password_length: int = DEFAULT_PASSWORD_LENGTH
    exclude_characters: str = DEFAULT_EXCLUDE_CHARACTERS
    default_engine: str = DEFAULT_DB_ENGINE
    connection_timeout: int = DEFAULT_CONNECTION_TIMEOUT
    ca_bundle_path: Optional[str] = None
    ssl_enabled: bool = True
    propagation_wait: int = DEFAULT_DB_WAIT_TIME
    master_secret_arn: Optional[str] = None
    secrets_manager_endpoint: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> 'RotationSettings':
        """
        Purpose:
            Build settings from environment variables, falling back to defaults.

        Args:
            environ (Mapping, optional): Source of variables (default: os.environ)

        Returns:
            RotationSettings: Validated settings

        Raises:
            ConfigurationError: If a numeric value is not a non-negative integer,
                the engine is unknown, or DB_SSL is not a boolean word
        """

        if environ is None:
            environ = os.environ

        settings = cls(
            password_length=_get_int(environ, ENV_PASSWORD_LENGTH, DEFAULT_PASSWORD_LENGTH),
            exclude_characters=environ.get(ENV_EXCLUDE_CHARACTERS, DEFAULT_EXCLUDE_CHARACTERS),
            default_engine=normalize_engine(environ.get(ENV_DB_ENGINE) or DEFAULT_DB_ENGINE),
            connection_timeout=_get_int(environ, ENV_DB_CONNECTION_TIMEOUT, DEFAULT_CONNECTION_TIMEOUT),
            ca_bundle_path=environ.get(ENV_DB_CA_BUNDLE_PATH) or None,
            ssl_enabled=_get_bool(environ, ENV_DB_SSL, True),
            propagation_wait=_get_int(environ, ENV_DB_PASSWORD_PROPAGATION_WAIT, DEFAULT_DB_WAIT_TIME),
            master_secret_arn=environ.get(ENV_MASTER_SECRET_ARN) or None,
            secrets_manager_endpoint=environ.get(ENV_SECRETS_MANAGER_ENDPOINT) or None,
            log_level=environ.get(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper(),
        )
        if settings.log_level not in VALID_LOG_LEVELS:
            raise ConfigurationError(f"{ENV_LOG_LEVEL} must be one of {', '.join(VALID_LOG_LEVELS)}, got {settings.log_level!r}")
        if settings.connection_timeout == 0:
            raise ConfigurationError(f"{ENV_DB_CONNECTION_TIMEOUT} must be greater than 0")
        return settings


def _get_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative, got {value}")
    return value


def _get_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None or raw == '':
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{key} must be true or false, got {raw!r}")
