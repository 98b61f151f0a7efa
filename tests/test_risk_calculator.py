"""Tests for margin and risk calculations."""

import math
import random
from datetime import datetime

import pytest
import pytz

from tradecore.models import (
    AccountContext,
    MarginTier,
    OrderFormData,
    OrderType,
    Position,
    RiskLevel,
    RiskMethod,
    Side,
)
from tradecore.risk_calculator import (
    RiskCalculator,
    classify_margin,
    classify_risk,
    pip_size,
    price_to_pips,
    round_to_lot_step,
    simplified_pip_value,
)


@pytest.fixture
def account():
    return AccountContext(balance=10_000, leverage=100, margin_call_level=100, stop_out_level=50)


@pytest.fixture
def calculator():
    return RiskCalculator()


def make_position(symbol, side, volume, open_price, current_price, position_id='p1'):
    return Position(
        id=position_id,
        symbol=symbol,
        side=side,
        volume=volume,
        open_price=open_price,
        current_price=open_price,
        open_time=datetime(2024, 1, 2, 9, 0, tzinfo=pytz.UTC)
    ).marked_at(current_price)


def test_pip_helpers():
    """Test pip size and the simplified pip value table."""
    assert pip_size('EURUSD') == 0.0001
    assert pip_size('USDJPY') == 0.01
    assert simplified_pip_value('EURUSD') == 1.0
    assert simplified_pip_value('usdjpy') == 0.91
    assert price_to_pips('EURUSD', -0.0050) == pytest.approx(50)
    assert price_to_pips('USDJPY', 0.50) == pytest.approx(50)


def test_margin_required(calculator):
    """Test margin = volume * 100000 * price / leverage."""
    assert calculator.margin_required(0.1, 1.0850, 100) == pytest.approx(108.50)
    assert calculator.margin_required(1, 1.0850, 50) == pytest.approx(2170.0)


def test_classify_risk_levels():
    """Test risk level boundaries are inclusive on the upper end."""
    assert classify_risk(0.5) is RiskLevel.LOW
    assert classify_risk(1.0) is RiskLevel.LOW
    assert classify_risk(2.0) is RiskLevel.MEDIUM
    assert classify_risk(3.0) is RiskLevel.MEDIUM
    assert classify_risk(5.0) is RiskLevel.HIGH
    assert classify_risk(5.01) is RiskLevel.EXTREME


def test_calculate_from_stop_distance(calculator, account):
    """Test risk derived from stop distance and volume when no percentage is set."""
    order = OrderFormData(
        symbol='EURUSD', side=Side.BUY, volume=0.1, order_type=OrderType.LIMIT,
        price=1.0850, stop_loss=1.0800, take_profit=1.0950
    )
    assessment = calculator.calculate(order, account)

    assert assessment.stop_loss_pips == pytest.approx(50)
    assert assessment.take_profit_pips == pytest.approx(100)
    assert assessment.risk_amount == pytest.approx(5.0)
    assert assessment.potential_loss == assessment.risk_amount
    assert assessment.potential_profit == pytest.approx(10.0)
    assert assessment.risk_reward_ratio == pytest.approx(2.0)
    assert assessment.margin_required == pytest.approx(108.50)
    assert assessment.risk_level is RiskLevel.LOW


def test_calculate_percentage_and_fixed(calculator, account):
    """Test percentage and fixed amount risk methods."""
    order = OrderFormData(symbol='EURUSD', side=Side.BUY, volume=0.1, risk_percentage=2)
    assessment = calculator.calculate(order, account, market_price=1.0850)
    assert assessment.risk_amount == pytest.approx(200)
    assert assessment.risk_percentage == pytest.approx(2)
    assert assessment.risk_level is RiskLevel.MEDIUM

    order = OrderFormData(symbol='EURUSD', side=Side.BUY, volume=0.1)
    assessment = calculator.calculate(order, account, market_price=1.0850, fixed_amount=600)
    assert assessment.risk_amount == pytest.approx(600)
    assert assessment.risk_level is RiskLevel.EXTREME


def test_calculate_requires_price(calculator, account):
    """Test that a market order without a market price cannot be assessed."""
    order = OrderFormData(symbol='EURUSD', side=Side.BUY, volume=0.1)
    with pytest.raises(ValueError, match="No entry price"):
        calculator.calculate(order, account)


def test_pluggable_pip_value(account):
    """Test that a custom pip value function is used everywhere."""
    calculator = RiskCalculator(pip_value_fn=lambda symbol: 10.0)
    order = OrderFormData(
        symbol='EURUSD', side=Side.BUY, volume=1, price=1.0850, stop_loss=1.0800
    )
    assert calculator.calculate(order, account).risk_amount == pytest.approx(500)


def test_size_position_percentage(calculator, account):
    """Test that the sized volume loses exactly the risk amount at the stop."""
    sizing = calculator.size_position(
        'EURUSD', Side.BUY, 1.0850, account,
        stop_loss_pips=50, take_profit_pips=100, risk_percentage=2
    )

    assert sizing.volume == pytest.approx(4.0)
    assert sizing.stop_loss == pytest.approx(1.0800)
    assert sizing.take_profit == pytest.approx(1.0950)
    assert sizing.assessment.risk_amount == pytest.approx(200)
    assert sizing.assessment.risk_reward_ratio == pytest.approx(2)


def test_size_position_sell_fixed(calculator, account):
    """Test fixed amount sizing and SELL side level placement."""
    sizing = calculator.size_position(
        'USDJPY', Side.SELL, 150.00, account,
        stop_loss_pips=20, take_profit_pips=40, method=RiskMethod.FIXED, fixed_amount=91
    )

    assert sizing.volume == pytest.approx(5.0)
    assert sizing.stop_loss == pytest.approx(150.20)
    assert sizing.take_profit == pytest.approx(149.60)


def test_size_position_lots(calculator, account):
    """Test that the lots method defaults to the account lot size."""
    sizing = calculator.size_position(
        'EURUSD', Side.BUY, 1.0850, account,
        stop_loss_pips=30, take_profit_pips=60, method=RiskMethod.LOTS
    )
    assert sizing.volume == pytest.approx(0.1)
    assert sizing.assessment.risk_amount == pytest.approx(3.0)


def test_size_position_zero_stop(calculator, account):
    """Test that a zero stop distance sizes to nothing instead of dividing by zero."""
    sizing = calculator.size_position(
        'EURUSD', Side.BUY, 1.0850, account, stop_loss_pips=0, take_profit_pips=50
    )
    assert sizing.volume == 0
    assert sizing.assessment.risk_reward_ratio == 0


def test_sized_volume_rounds_down_to_lot_step(calculator, account):
    """Test that a fractional size is rounded down so the export keeps every digit."""
    sizing = calculator.size_position(
        'EURUSD', Side.BUY, 1.0850, account, stop_loss_pips=30, take_profit_pips=60, risk_percentage=2
    )

    # 200 / 30 pips = 6.666... lots
    assert sizing.volume == 6.66
    assert sizing.volume * 30 <= 200
    assert round_to_lot_step(0.129999) == 0.12
    assert round_to_lot_step(4.0) == 4.0


def test_margin_status_without_positions(calculator, account):
    """Test that an account with no margin used is safe with an infinite level."""
    status = calculator.margin_status([], account)

    assert status.total_margin_used == 0
    assert status.equity == account.balance
    assert status.free_margin == account.balance
    assert math.isinf(status.margin_level)
    assert status.status is MarginTier.SAFE
    assert not status.has_margin_in_use


def test_eurusd_scenario(calculator, account):
    """Test one EURUSD BUY marked at the bid against a 10k account."""
    position = make_position('EURUSD', Side.BUY, 0.1, 1.0850, 1.0875)
    status = calculator.margin_status([position], account)

    assert position.pnl == pytest.approx(25.00)
    assert status.total_margin_used == pytest.approx(108.75)
    assert status.equity == pytest.approx(10_025)
    assert status.margin_level == pytest.approx(9220, rel=1e-3)
    assert status.status is MarginTier.SAFE


def test_danger_and_critical_scenarios(calculator, account):
    """Test heavy losses push the account into danger, then critical."""
    # 10 lots bought at 1.1000: margin ~10988, equity 8800 -> ~80%
    danger = make_position('EURUSD', Side.BUY, 10, 1.1000, 1.0988)
    status = calculator.margin_status([danger], account)
    assert status.margin_level == pytest.approx(80.09, abs=0.01)
    assert status.status is MarginTier.DANGER

    # Equity 5000 against ~10950 margin -> ~46%
    critical = make_position('EURUSD', Side.BUY, 10, 1.1000, 1.0950)
    status = calculator.margin_status([critical], account)
    assert status.margin_level < 50
    assert status.status is MarginTier.CRITICAL


def test_margin_tiers_partition():
    """Test that every margin level maps to exactly the tier its interval defines."""
    rng = random.Random(42)

    for _ in range(500):
        stop_out = rng.uniform(0, 150)
        margin_call = rng.uniform(stop_out + 0.01, 199.99)
        account = AccountContext(
            balance=10_000, margin_call_level=margin_call, stop_out_level=stop_out
        )
        level = rng.choice([
            rng.uniform(0, 400), stop_out, margin_call, 200.0, 0.0
        ])

        tier = classify_margin(level, total_margin_used=100.0, account=account)

        if level >= 200:
            assert tier is MarginTier.SAFE
        elif level >= margin_call:
            assert tier is MarginTier.WARNING
        elif level >= stop_out:
            assert tier is MarginTier.DANGER
        else:
            assert tier is MarginTier.CRITICAL


def test_project_margin(calculator, account):
    """Test margin projection for a test position."""
    status = calculator.margin_status([], account)

    projection = calculator.project(1, 1.0850, status, account)
    assert projection.margin_required == pytest.approx(1085)
    assert projection.margin_percent == pytest.approx(10.85)
    assert projection.margin_level_after == pytest.approx(10_000 / 1085 * 100)
    assert projection.can_open

    assert not calculator.can_open(100, 1.0850, status, account)


def test_project_respects_margin_call_level(calculator, account):
    """Test that a trade leaving the level below margin call cannot open."""
    status = calculator.margin_status([], account)

    # 9.5 lots needs 10307.5 margin: more than free margin
    assert not calculator.can_open(9.5, 1.0850, status, account)
    # 9 lots needs 9765 margin: fits free margin, level after ~102%
    assert calculator.can_open(9, 1.0850, status, account)
