"""Tests for exception mapping."""

import pytest

from tradecore.exceptions import (
    EXIT_BLOCKED,
    EXIT_CONFIG_ERROR,
    EXIT_DATA_ERROR,
    EXIT_GENERAL_ERROR,
    ConfigError,
    DataError,
    ExceptionMapper,
    ImmutableFieldError,
    InsufficientMarginError,
    InvariantViolationError,
    MarketClosedError,
    ModificationRejectedError,
    NotFoundError,
    OrderStateError,
)


def test_config_error_mapping():
    """Test that ConfigError maps to EXIT_CONFIG_ERROR."""
    assert ExceptionMapper.map_to_exit_code(ConfigError("Invalid configuration")) == EXIT_CONFIG_ERROR


def test_data_error_mapping():
    """Test that DataError maps to EXIT_DATA_ERROR."""
    assert ExceptionMapper.map_to_exit_code(DataError("Malformed positions file")) == EXIT_DATA_ERROR


def test_not_found_mapping():
    error = NotFoundError('p1')
    assert ExceptionMapper.map_to_exit_code(error) == EXIT_DATA_ERROR
    assert error.code == 'NotFound'


@pytest.mark.parametrize('error', [
    InsufficientMarginError(required=500, available=100, margin_level_after=40),
    MarketClosedError('EURUSD'),
    OrderStateError("o1", "FILLED"),
    ImmutableFieldError('symbol'),
    ModificationRejectedError('p1', []),
])
def test_blocked_actions(error):
    """Test that refused trading actions map to EXIT_BLOCKED."""
    assert ExceptionMapper.map_to_exit_code(error) == EXIT_BLOCKED


def test_invariant_violation_is_general_error():
    assert ExceptionMapper.map_to_exit_code(InvariantViolationError("broken")) == EXIT_GENERAL_ERROR


def test_value_error_malformed():
    """Test that conversion failures map to EXIT_DATA_ERROR."""
    assert ExceptionMapper.map_to_exit_code(ValueError("could not convert string to float: 'x'")) == EXIT_DATA_ERROR


def test_generic_value_error():
    """Test that generic ValueError maps to EXIT_CONFIG_ERROR."""
    assert ExceptionMapper.map_to_exit_code(ValueError("Unknown sort field: foo")) == EXIT_CONFIG_ERROR


def test_key_error_mapping():
    """Test that KeyError maps to EXIT_CONFIG_ERROR."""
    assert ExceptionMapper.map_to_exit_code(KeyError("missing_key")) == EXIT_CONFIG_ERROR


def test_missing_file_mapping():
    assert ExceptionMapper.map_to_exit_code(FileNotFoundError("positions.csv")) == EXIT_DATA_ERROR


def test_generic_exception_mapping():
    """Test that generic exceptions map to EXIT_GENERAL_ERROR."""
    assert ExceptionMapper.map_to_exit_code(RuntimeError("Unexpected error")) == EXIT_GENERAL_ERROR


def test_error_details():
    error = InsufficientMarginError(required=500, available=100, margin_level_after=40)
    assert error.code == 'InsufficientMargin'
    assert error.required == 500
    assert error.available == 100
