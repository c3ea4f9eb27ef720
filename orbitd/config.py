"""Runtime configuration.

Values come from, in increasing precedence: built-in defaults, an optional
JSON config file, ``ORBITD_*`` environment variables and command-line flags.
The result is an immutable ``Config`` handed to the scheduler.
"""

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import jsonschema

from orbitd.docker_api import DEFAULT_SOCKET_PATH, PULL_TIMEOUT, STOP_TIMEOUT
from orbitd.errors import ConfigError
from orbitd.registry import DEFAULT_LIST_TIMEOUT
from orbitd.versions import UpdatePolicy


logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 12 * 3600.0
DEFAULT_PACE = 1.0

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(d|h|m|s)')
_DURATION_UNITS = {'d': 86400, 'h': 3600, 'm': 60, 's': 1}

_TRUE_VALUES = {'1', 'true', 'yes', 'y', 'on'}
_FALSE_VALUES = {'0', 'false', 'no', 'n', 'off'}

# Configuration file schema
CONFIG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "policy": {"type": "string"},
        "interval": {"type": ["string", "number"]},
        "cleanup": {"type": "boolean"},
        "label_enable": {"type": "boolean"},
        "debug": {"type": "boolean"},
        "dry_run": {"type": "boolean"},
        "run_once": {"type": "boolean"},
        "pace": {"type": "number", "minimum": 0},
        "docker_socket": {"type": "string"},
        "registry_timeout": {"type": "number", "exclusiveMinimum": 0},
        "pull_timeout": {"type": "number", "exclusiveMinimum": 0},
        "stop_timeout": {"type": "integer", "minimum": 0},
        "notifications": {
            "type": "object",
            "properties": {
                "ntfy": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "priority": {"enum": ["min", "low", "default", "high", "urgent"]},
                        "headers": {"type": "object", "additionalProperties": {"type": "string"}}
                    },
                    "required": ["url"]
                },
                "webhook": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "headers": {"type": "object", "additionalProperties": {"type": "string"}},
                        "body_template": {"type": "string"}
                    },
                    "required": ["url"]
                }
            }
        }
    }
}

# environment variable -> config key
ENV_VARS = {
    'ORBITD_POLICY': 'policy',
    'ORBITD_INTERVAL': 'interval',
    'ORBITD_CLEANUP': 'cleanup',
    'ORBITD_LABEL_ENABLE': 'label_enable',
    'ORBITD_DEBUG': 'debug',
    'ORBITD_DRY_RUN': 'dry_run',
    'ORBITD_RUN_ONCE': 'run_once',
    'ORBITD_PACE': 'pace',
    'ORBITD_REGISTRY_TIMEOUT': 'registry_timeout',
    'ORBITD_PULL_TIMEOUT': 'pull_timeout',
    'ORBITD_STOP_TIMEOUT': 'stop_timeout',
}

_BOOL_KEYS = {'cleanup', 'label_enable', 'debug', 'dry_run', 'run_once'}
_FLOAT_KEYS = {'pace', 'registry_timeout', 'pull_timeout'}


@dataclass(frozen=True)
class Config:
    """Settings for one daemon run."""
    policy: UpdatePolicy = UpdatePolicy.DIGEST
    interval: float = DEFAULT_INTERVAL
    cleanup: bool = True
    require_label: bool = False
    debug: bool = False
    dry_run: bool = False
    run_once: bool = False
    pace: float = DEFAULT_PACE
    docker_socket: str = DEFAULT_SOCKET_PATH
    registry_timeout: float = DEFAULT_LIST_TIMEOUT
    pull_timeout: float = float(PULL_TIMEOUT)
    stop_timeout: int = STOP_TIMEOUT
    notifications: Dict[str, Any] = field(default_factory=dict)


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse an interval into seconds.

    Accepts plain seconds (``90``, ``"90"``) or unit sequences such as
    ``"30s"``, ``"5m"``, ``"12h"``, ``"1h30m"`` and ``"1d"``.

    Raises:
        ConfigError: unparseable or not positive
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text) or not text:
                raise ConfigError(f"Invalid duration '{value}' (use e.g. 30s, 5m, 12h, 1h30m)")
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


def parse_bool(name: str, value: Union[str, bool]) -> bool:
    if isinstance(value, bool):
        return value
    text = value.strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for {name}: '{value}'")


def load_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Load and validate a JSON configuration file."""
    path = Path(path)
    try:
        with open(path, 'r') as f:
            data = json.load(f)
        jsonschema.validate(data, CONFIG_SCHEMA)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file {path} not found") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing config file {path}: {e}") from e
    except jsonschema.ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e.message}") from e
    return data


def _from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for var, key in ENV_VARS.items():
        raw = environ.get(var)
        if raw is not None and raw.strip() != '':
            values[key] = raw
    if environ.get('DOCKER_SOCKET'):
        values['docker_socket'] = environ['DOCKER_SOCKET']
    elif environ.get('DOCKER_HOST', '').startswith('unix://'):
        values['docker_socket'] = environ['DOCKER_HOST'][len('unix://'):]
    elif environ.get('DOCKER_HOST'):
        logger.warning(f"Only unix:// DOCKER_HOST values are supported, ignoring {environ['DOCKER_HOST']}")

    notifications: Dict[str, Any] = {}
    if environ.get('ORBITD_NTFY_URL'):
        notifications['ntfy'] = {'url': environ['ORBITD_NTFY_URL']}
        if environ.get('ORBITD_NTFY_PRIORITY'):
            notifications['ntfy']['priority'] = environ['ORBITD_NTFY_PRIORITY']
    if environ.get('ORBITD_WEBHOOK_URL'):
        notifications['webhook'] = {'url': environ['ORBITD_WEBHOOK_URL']}
    if notifications:
        values['notifications'] = notifications
    return values


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in values.items():
        if key == 'policy':
            if not UpdatePolicy.is_valid(value):
                logger.warning(f"Unknown update policy '{value}', using digest")
            result['policy'] = UpdatePolicy.parse(value)
        elif key == 'interval':
            result['interval'] = parse_duration(value)
        elif key == 'label_enable':
            result['require_label'] = parse_bool(key, value)
        elif key in _BOOL_KEYS:
            result[key] = parse_bool(key, value)
        elif key in _FLOAT_KEYS:
            try:
                result[key] = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid number for {key}: {value!r}") from e
            if result[key] < 0:
                raise ConfigError(f"{key} must not be negative")
        elif key == 'stop_timeout':
            try:
                result[key] = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid integer for {key}: {value!r}") from e
        else:
            result[key] = value
    return result


def _merge_notifications(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for channel, settings in override.items():
        merged.setdefault(channel, {}).update(settings)
    return merged


def load_config(cli_values: Optional[Dict[str, Any]] = None,
                environ: Optional[Mapping[str, str]] = None,
                config_file: Optional[Union[str, Path]] = None) -> Config:
    """
    Resolve the effective configuration.

    Args:
        cli_values: Flag values; None entries mean "not given"
        environ: Environment mapping (os.environ in production)
        config_file: Optional JSON file path; ORBITD_CONFIG is used when omitted

    Returns:
        The validated Config

    Raises:
        ConfigError: any invalid value
    """
    environ = environ if environ is not None else {}
    config_file = config_file or environ.get('ORBITD_CONFIG')

    layers = []
    if config_file:
        layers.append(load_config_file(config_file))
    layers.append(_from_env(environ))
    layers.append({k: v for k, v in (cli_values or {}).items() if v is not None})

    merged: Dict[str, Any] = {}
    for layer in layers:
        coerced = _coerce(layer)
        if 'notifications' in coerced:
            coerced['notifications'] = _merge_notifications(
                merged.get('notifications', {}), coerced['notifications'])
        merged.update(coerced)

    return Config(**merged)
