"""
Configuration loading and normalisation.

Raw YAML/JSON values are coerced exactly once, here, into an ImportOptions
instance. Everything downstream reads typed attributes only.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml

from .errors import ConfigError
from .models import RequirementKind, Stage

logger = logging.getLogger(__name__)


_BOOL_WORDS = {
    'true': True, 'yes': True, 'y': True, 'on': True, '1': True, 'enabled': True,
    'false': False, 'no': False, 'n': False, 'off': False, '0': False, 'disabled': False, '': False,
}

# config key -> requirement kind for the encryption_secrets section
_SECRET_SECTIONS = {
    'symmetric_keys': RequirementKind.SYMMETRIC_KEY,
    'certificates': RequirementKind.CERTIFICATE,
    'asymmetric_keys': RequirementKind.ASYMMETRIC_KEY,
    'application_roles': RequirementKind.APPLICATION_ROLE,
}

CONNECTION_KEYS = (
    'server', 'database', 'driver', 'client', 'authentication_type',
    'username', 'user', 'uid', 'password', 'pwd', 'port', 'tds_version',
)

DEFAULT_EXCLUDED_STAGES: FrozenSet[Stage] = frozenset()


def coerce_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ConfigError(f"{key}: expected a boolean, got {value!r}")
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _BOOL_WORDS:
            return _BOOL_WORDS[word]
    raise ConfigError(f"{key}: expected a boolean, got {value!r}")


def coerce_int(value: Any, key: str, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key}: expected an integer, got {value!r}")
    if isinstance(value, int):
        result = value
    elif isinstance(value, float) and value.is_integer():
        result = int(value)
    elif isinstance(value, str) and value.strip().lstrip('-').isdigit():
        result = int(value.strip())
    else:
        raise ConfigError(f"{key}: expected an integer, got {value!r}")
    if result < minimum:
        raise ConfigError(f"{key}: must be >= {minimum}, got {result}")
    return result


def coerce_str_map(value: Any, key: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key}: expected a mapping, got {type(value).__name__}")
    result = {}
    for name, item in value.items():
        if item is None:
            continue
        result[str(name)] = str(item)
    return result


def coerce_list(value: Any, key: str) -> Tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(',') if part.strip())
    if isinstance(value, (list, tuple, set)):
        return tuple(value)
    raise ConfigError(f"{key}: expected a list, got {type(value).__name__}")


@dataclass(frozen=True)
class ImportOptions:
    import_directory: Optional[Path] = None
    connection: Dict[str, Any] = field(default_factory=dict)
    exclude_stages: FrozenSet[Stage] = DEFAULT_EXCLUDED_STAGES
    max_retry_passes: int = 10
    script_timeout: int = 0
    fail_fast: bool = False
    transactional_scripts: bool = True
    error_log_path: Optional[Path] = None
    log_file: str = 'sqlrestore_import.log'
    sqlcmd_variables: Dict[str, str] = field(default_factory=dict)
    retryable_error_numbers: FrozenSet[int] = frozenset()
    retryable_message_patterns: Tuple[str, ...] = ()
    replace_default_retry_policy: bool = False
    database_master_key: Optional[str] = None
    secrets: Dict[RequirementKind, Dict[str, str]] = field(default_factory=dict)

    def with_overrides(self, **changes) -> 'ImportOptions':
        """Apply already-typed overrides, e.g. from the command line."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def load_config(config_file: str) -> Dict:
    """Load configuration from YAML or JSON file."""
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            if config_file.endswith(('.yaml', '.yml')):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file {config_file} not found")
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {config_file}: {e}")
    except (yaml.YAMLError, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ConfigError(f"Invalid configuration file format: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_file} must contain a mapping")
    return data


def _parse_stages(value: Any, key: str) -> FrozenSet[Stage]:
    stages = set()
    for item in coerce_list(value, key):
        try:
            stages.add(Stage.from_label(str(item)))
        except ValueError as e:
            raise ConfigError(f"{key}: {e}")
    return frozenset(stages)


def _parse_secrets(section: Any) -> Tuple[Optional[str], Dict[RequirementKind, Dict[str, str]]]:
    if section is None:
        return None, {}
    if not isinstance(section, dict):
        raise ConfigError("encryption_secrets: expected a mapping")
    dmk = section.get('database_master_key')
    secrets = {}
    for key, kind in _SECRET_SECTIONS.items():
        values = coerce_str_map(section.get(key), f"encryption_secrets.{key}")
        if values:
            secrets[kind] = values
    unknown = set(section) - set(_SECRET_SECTIONS) - {'database_master_key'}
    for key in sorted(unknown):
        logger.warning(f"Ignoring unknown encryption_secrets section: {key}")
    return (str(dmk) if dmk is not None else None), secrets


def options_from_config(config: Dict) -> ImportOptions:
    """Normalise a raw configuration mapping into ImportOptions."""
    policy = config.get('retry_policy') or {}
    if not isinstance(policy, dict):
        raise ConfigError("retry_policy: expected a mapping")

    numbers = frozenset(
        coerce_int(n, 'retry_policy.retryable_error_numbers', minimum=1)
        for n in coerce_list(policy.get('retryable_error_numbers'), 'retry_policy.retryable_error_numbers')
    )
    patterns = tuple(str(p) for p in coerce_list(policy.get('retryable_message_patterns'),
                                                  'retry_policy.retryable_message_patterns'))
    dmk, secrets = _parse_secrets(config.get('encryption_secrets'))

    import_dir = config.get('import_directory')
    error_log = config.get('error_log_path')

    return ImportOptions(
        import_directory=Path(import_dir) if import_dir else None,
        connection={k: config[k] for k in CONNECTION_KEYS if k in config},
        exclude_stages=_parse_stages(config.get('exclude_stages'), 'exclude_stages'),
        max_retry_passes=coerce_int(config.get('max_retry_passes', 10), 'max_retry_passes'),
        script_timeout=coerce_int(config.get('script_timeout', 0), 'script_timeout'),
        fail_fast=coerce_bool(config.get('fail_fast', False), 'fail_fast'),
        transactional_scripts=coerce_bool(config.get('transactional_scripts', True), 'transactional_scripts'),
        error_log_path=Path(error_log) if error_log else None,
        log_file=str(config.get('log_file') or 'sqlrestore_import.log'),
        sqlcmd_variables=coerce_str_map(config.get('sqlcmd_variables'), 'sqlcmd_variables'),
        retryable_error_numbers=numbers,
        retryable_message_patterns=patterns,
        replace_default_retry_policy=coerce_bool(policy.get('replace_defaults', False), 'retry_policy.replace_defaults'),
        database_master_key=dmk,
        secrets=secrets,
    )
