"""Tests for position export and parsing."""

import json
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytz

from tradecore.exceptions import DataError
from tradecore.export import (
    CSV_COLUMNS,
    parse_positions_csv,
    serialize,
    to_csv,
    to_json,
    write_export,
)
from tradecore.models import Position, Side

T0 = datetime(2024, 2, 14, 9, 30, tzinfo=pytz.UTC)


@pytest.fixture
def positions():
    return [
        Position(
            id='p1', symbol='EURUSD', side=Side.BUY, volume=0.1, open_price=1.085,
            current_price=1.085, open_time=T0, swap=-1.2, commission=0.7, comment='swing, long'
        ).marked_at(1.0875),
        Position(
            id='p2', symbol='USDJPY', side=Side.SELL, volume=1.25, open_price=150.123,
            current_price=150.123, open_time=T0 + timedelta(hours=3)
        ).marked_at(149.9),
    ]


def test_csv_header_and_formatting(positions):
    """Test column order and number formatting."""
    lines = to_csv(positions).split('\n')

    assert lines[0] == 'Symbol,Side,Volume,Open Price,Current Price,P&L,P&L %,Swap,Commission,Open Time,Comment'
    assert lines[1] == (
        'EURUSD,BUY,0.10,1.08500,1.08750,25.00,0.23,-1.20,0.70,'
        '2024-02-14T09:30:00+00:00,"swing, long"'
    )
    assert lines[2].startswith('USDJPY,SELL,1.25,150.12300,149.90000,')
    assert lines[2].endswith(',2024-02-14T12:30:00+00:00,')


def test_csv_row_order_is_input_order(positions):
    lines = to_csv(list(reversed(positions))).strip().split('\n')
    assert lines[1].startswith('USDJPY')
    assert lines[2].startswith('EURUSD')


def test_empty_export_has_header():
    assert to_csv([]).strip() == ','.join(CSV_COLUMNS)


def test_round_trip(positions):
    """Test that parsing an export gives back the same field values."""
    rows = parse_positions_csv(to_csv(positions))

    assert len(rows) == len(positions)
    for row, position in zip(rows, positions):
        assert row.symbol == position.symbol
        assert row.side is position.side
        assert row.volume == pytest.approx(position.volume, abs=0.005)
        assert row.open_price == pytest.approx(position.open_price, abs=5e-6)
        assert row.current_price == pytest.approx(position.current_price, abs=5e-6)
        assert row.pnl == pytest.approx(position.pnl, abs=0.005)
        assert row.swap == pytest.approx(position.swap, abs=0.005)
        assert row.open_time == position.open_time
        assert row.comment == position.comment


def test_row_to_position(positions):
    row = parse_positions_csv(to_csv(positions))[0]
    position = row.to_position('restored')

    assert position.id == 'restored'
    assert position.current_price == pytest.approx(1.0875)
    assert position.pnl == pytest.approx(25.0)


def test_json_export(positions):
    rows = json.loads(to_json(positions))

    assert list(rows[0].keys()) == CSV_COLUMNS
    assert rows[0]['P&L'] == '25.00'
    assert rows[1]['Comment'] == ''


def test_serialize_formats(positions):
    assert serialize(positions, 'CSV') == to_csv(positions)
    assert serialize(positions, 'json') == to_json(positions)
    with pytest.raises(ValueError, match="Unsupported export format"):
        serialize(positions, 'xlsx')


def test_write_and_parse_file(positions):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = write_export(positions, Path(tmpdir) / 'positions.csv')
        rows = parse_positions_csv(path)
        assert [r.symbol for r in rows] == ['EURUSD', 'USDJPY']

        rows = parse_positions_csv(str(path))
        assert len(rows) == 2


def test_missing_columns():
    with pytest.raises(DataError, match="missing columns"):
        parse_positions_csv("Symbol,Side\nEURUSD,BUY\n")


def test_malformed_value(positions):
    text = to_csv(positions).replace('0.10', 'lots', 1)
    with pytest.raises(DataError, match="line 2"):
        parse_positions_csv(text)


def test_malformed_side(positions):
    text = to_csv(positions).replace('BUY', 'HOLD', 1)
    with pytest.raises(DataError, match="Malformed positions file"):
        parse_positions_csv(text)
