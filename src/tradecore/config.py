"""Configuration loading, validation and normalization."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pytz
import yaml

from .exceptions import ConfigError
from .export import SUPPORTED_FORMATS
from .models import AccountContext

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TRADECORE_CONFIG"
DEFAULT_CONFIG_FILE = "config.yaml"

DEFAULTS = {
    'account': {
        'leverage': 100,
        'margin_call_level': 100.0,
        'stop_out_level': 50.0,
        'default_lot_size': 0.1,
    },
    'ledger': {
        'throttle_interval_ms': 1000,
    },
    'risk': {
        'max_risk_percentage': 10.0,
        'large_volume_warning': 10.0,
    },
    'export': {
        'format': 'csv',
    },
    'display': {
        'timezone': 'UTC',
    },
}


def resolve_config_path(filepath: Optional[Union[str, Path]] = None) -> Path:
    """Explicit path first, then $TRADECORE_CONFIG, then ./config.yaml."""
    if filepath:
        return Path(filepath)
    return Path(os.getenv(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE))


def load_config(filepath: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load and validate a configuration file.

    Args:
        filepath: Path to the YAML file (see ``resolve_config_path``)

    Returns:
        Validated configuration dictionary

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    path = resolve_config_path(filepath)
    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file: {e}")

    logger.debug(f"Loaded configuration from {path}")
    return validate_config(config)


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and normalize the configuration.

    Only the ``account`` section is required; other sections are filled
    in with defaults.

    Args:
        config: Raw configuration dictionary

    Returns:
        Validated and normalized configuration

    Raises:
        ConfigError: If configuration is invalid
    """
    if not isinstance(config, dict):
        raise ConfigError("Configuration must be a mapping")

    if 'account' not in config:
        raise ConfigError("Missing required configuration section: account")

    for section, defaults in DEFAULTS.items():
        values = config.get(section) or {}
        if not isinstance(values, dict):
            raise ConfigError(f"Configuration section '{section}' must be a mapping")
        config[section] = {**defaults, **values}

    config = _validate_account(config)
    config = _validate_ledger(config)
    config = _validate_risk(config)
    config = _validate_export(config)
    config = _validate_display(config)

    return config


def _number(section: str, name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{section}.{name} must be a number, got {value!r}")
    return float(value)


def _validate_account(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate account parameters."""
    account = config['account']

    if 'balance' not in account:
        raise ConfigError("Missing required account field: balance")

    for name in ('balance', 'leverage', 'margin_call_level', 'stop_out_level', 'default_lot_size'):
        account[name] = _number('account', name, account[name])

    if account['balance'] <= 0:
        raise ConfigError("account.balance must be positive")

    if account['leverage'] < 1:
        raise ConfigError("account.leverage must be at least 1")

    if account['default_lot_size'] <= 0:
        raise ConfigError("account.default_lot_size must be positive")

    if account['stop_out_level'] < 0:
        raise ConfigError("account.stop_out_level cannot be negative")

    if account['stop_out_level'] >= account['margin_call_level']:
        raise ConfigError(
            f"account.stop_out_level ({account['stop_out_level']}) must be below "
            f"margin_call_level ({account['margin_call_level']})"
        )

    return config


def _validate_ledger(config: Dict[str, Any]) -> Dict[str, Any]:
    ledger = config['ledger']
    ledger['throttle_interval_ms'] = _number('ledger', 'throttle_interval_ms', ledger['throttle_interval_ms'])
    if ledger['throttle_interval_ms'] < 0:
        raise ConfigError("ledger.throttle_interval_ms cannot be negative")
    return config


def _validate_risk(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate validator thresholds."""
    risk = config['risk']

    risk['max_risk_percentage'] = _number('risk', 'max_risk_percentage', risk['max_risk_percentage'])
    if not 0 < risk['max_risk_percentage'] <= 100:
        raise ConfigError("risk.max_risk_percentage must be between 0 and 100")

    risk['large_volume_warning'] = _number('risk', 'large_volume_warning', risk['large_volume_warning'])
    if risk['large_volume_warning'] <= 0:
        raise ConfigError("risk.large_volume_warning must be positive")

    return config


def _validate_export(config: Dict[str, Any]) -> Dict[str, Any]:
    export = config['export']
    fmt = str(export['format']).lower()
    if fmt not in SUPPORTED_FORMATS:
        raise ConfigError(f"Invalid export format: {export['format']}. Must be one of {list(SUPPORTED_FORMATS)}")
    export['format'] = fmt
    return config


def _validate_display(config: Dict[str, Any]) -> Dict[str, Any]:
    display = config['display']
    try:
        pytz.timezone(display['timezone'])
    except pytz.UnknownTimeZoneError:
        raise ConfigError(f"Unknown timezone: {display['timezone']}")
    return config


def account_from_config(config: Dict[str, Any]) -> AccountContext:
    """Build the account context from a validated configuration."""
    account = config['account']
    return AccountContext(
        balance=account['balance'],
        leverage=account['leverage'],
        margin_call_level=account['margin_call_level'],
        stop_out_level=account['stop_out_level'],
        default_lot_size=account['default_lot_size']
    )
