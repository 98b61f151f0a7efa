"""Serialization of position snapshots for export and backup collaborators."""

import io
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence, Union

import pandas as pd

from .exceptions import DataError
from .models import Position, Side

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    'Symbol', 'Side', 'Volume', 'Open Price', 'Current Price',
    'P&L', 'P&L %', 'Swap', 'Commission', 'Open Time', 'Comment'
]

SUPPORTED_FORMATS = ('csv', 'json')


class PositionRow(NamedTuple):
    """One parsed export row."""
    symbol: str
    side: Side
    volume: float
    open_price: float
    current_price: float
    pnl: float
    pnl_percent: float
    swap: float
    commission: float
    open_time: datetime
    comment: Optional[str]

    def to_position(self, position_id: str) -> Position:
        """Rebuild a position marked at the exported current price."""
        return Position(
            id=position_id,
            symbol=self.symbol,
            side=self.side,
            volume=self.volume,
            open_price=self.open_price,
            current_price=self.open_price,
            open_time=self.open_time,
            swap=self.swap,
            commission=self.commission,
            comment=self.comment
        ).marked_at(self.current_price)


def _format_row(position: Position) -> dict:
    # Prices keep 5 decimals, every other number 2
    return {
        'Symbol': position.symbol,
        'Side': position.side.value,
        'Volume': f"{position.volume:.2f}",
        'Open Price': f"{position.open_price:.5f}",
        'Current Price': f"{position.current_price:.5f}",
        'P&L': f"{position.pnl:.2f}",
        'P&L %': f"{position.pnl_percent:.2f}",
        'Swap': f"{position.swap:.2f}",
        'Commission': f"{position.commission:.2f}",
        'Open Time': position.open_time.isoformat(),
        'Comment': position.comment or '',
    }


def positions_frame(positions: Sequence[Position]) -> pd.DataFrame:
    """Formatted export table, one row per position in the given order."""
    return pd.DataFrame([_format_row(p) for p in positions], columns=CSV_COLUMNS)


def to_csv(positions: Sequence[Position]) -> str:
    """
    Serialize positions to CSV.

    Args:
        positions: Positions in the desired row order

    Returns:
        CSV text with the standard header
    """
    buffer = io.StringIO()
    positions_frame(positions).to_csv(buffer, index=False, lineterminator='\n')
    return buffer.getvalue()


def to_json(positions: Sequence[Position]) -> str:
    """Serialize positions to a JSON list using the CSV column names."""
    return json.dumps([_format_row(p) for p in positions], indent=2)


def serialize(positions: Sequence[Position], fmt: str = 'csv') -> str:
    """
    Serialize positions in a supported format.

    Raises:
        ValueError: If the format is not supported
    """
    fmt = fmt.lower()
    if fmt == 'csv':
        return to_csv(positions)
    elif fmt == 'json':
        return to_json(positions)
    raise ValueError(f"Unsupported export format: {fmt}. Must be one of {SUPPORTED_FORMATS}")


def write_export(positions: Sequence[Position], filepath: Union[str, Path], fmt: str = 'csv') -> Path:
    """Write a serialized export to disk and return the path."""
    path = Path(filepath)
    path.write_text(serialize(positions, fmt))
    logger.info(f"Exported {len(positions)} positions to {path}")
    return path


def parse_positions_csv(source: Union[str, Path, io.StringIO]) -> List[PositionRow]:
    """
    Parse an exported positions CSV.

    Args:
        source: CSV text, a path to a CSV file, or a text buffer

    Returns:
        Parsed rows in file order

    Raises:
        DataError: If columns are missing or a value cannot be parsed
    """
    if isinstance(source, Path):
        handle = source
    elif isinstance(source, str) and '\n' not in source and Path(source).exists():
        handle = Path(source)
    elif isinstance(source, str):
        handle = io.StringIO(source)
    else:
        handle = source

    df = pd.read_csv(handle, dtype=str, keep_default_na=False)

    missing = [col for col in CSV_COLUMNS if col not in df.columns]
    if missing:
        raise DataError(f"Malformed positions file, missing columns: {missing}")

    rows = []
    for line_no, record in enumerate(df.to_dict(orient='records'), start=2):
        try:
            rows.append(PositionRow(
                symbol=record['Symbol'].strip().upper(),
                side=Side(record['Side'].strip().upper()),
                volume=float(record['Volume']),
                open_price=float(record['Open Price']),
                current_price=float(record['Current Price']),
                pnl=float(record['P&L']),
                pnl_percent=float(record['P&L %']),
                swap=float(record['Swap']),
                commission=float(record['Commission']),
                open_time=datetime.fromisoformat(record['Open Time']),
                comment=record['Comment'] or None
            ))
        except ValueError as e:
            raise DataError(f"Malformed positions file at line {line_no}: {e}") from e

    logger.debug(f"Parsed {len(rows)} positions")
    return rows
