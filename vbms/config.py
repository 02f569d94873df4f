# config.py
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from vbms.errors import ConfigError

# No checks quicker than 60 seconds. Don't want to DOS ourselves
STALENESS_WINDOW = 60

DEFAULTS = {
    'UPDATE_TICK': 5,
    'BATCH_SIZE': 10,
    'MAX_RUNNERS': 20,
    'PROBE_TIMEOUT': 10,
    'PROBE_DEADLINE': 30,
    'EARLY_PERSIST': False,
    'DATABASE_PATH': 'servers.db',
    'LOG_DIR': 'logs',
    'LOG_LEVEL': 'INFO',
}

POSITIVE_INTS = ('UPDATE_TICK', 'BATCH_SIZE', 'MAX_RUNNERS', 'PROBE_TIMEOUT', 'PROBE_DEADLINE')


def _parse_bool(name, value):
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('', '0', 'false', 'no', 'off'):
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _parse_positive_int(name, value):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if number <= 0:
        raise ConfigError(f"{name} must be greater than zero, got {number}")
    return number


def load_config(environ=None):
    """Read the service configuration from the environment (and .env)."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    config = {}
    for name, default in DEFAULTS.items():
        value = environ.get(name, default)
        if name in POSITIVE_INTS:
            value = _parse_positive_int(name, value)
        elif name == 'EARLY_PERSIST':
            value = _parse_bool(name, value)
        config[name] = value
    return config


@dataclass(frozen=True)
class CheckSettings:
    """Settings shared by the scheduler, the batch claimer and the runners.

    Built once at startup from ``app.config`` and never mutated afterwards.
    """
    update_tick: int = DEFAULTS['UPDATE_TICK']
    batch_size: int = DEFAULTS['BATCH_SIZE']
    max_runners: int = DEFAULTS['MAX_RUNNERS']
    probe_timeout: int = DEFAULTS['PROBE_TIMEOUT']
    probe_deadline: int = DEFAULTS['PROBE_DEADLINE']
    early_persist: bool = DEFAULTS['EARLY_PERSIST']
    staleness_window: int = STALENESS_WINDOW

    @classmethod
    def from_app_config(cls, config):
        return cls(
            update_tick=_parse_positive_int('UPDATE_TICK', config['UPDATE_TICK']),
            batch_size=_parse_positive_int('BATCH_SIZE', config['BATCH_SIZE']),
            max_runners=_parse_positive_int('MAX_RUNNERS', config['MAX_RUNNERS']),
            probe_timeout=_parse_positive_int('PROBE_TIMEOUT', config['PROBE_TIMEOUT']),
            probe_deadline=_parse_positive_int('PROBE_DEADLINE', config['PROBE_DEADLINE']),
            early_persist=_parse_bool('EARLY_PERSIST', config['EARLY_PERSIST']),
        )
