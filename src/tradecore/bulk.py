"""Bulk actions over a selection of positions.

Every item is processed independently: one item's failure is recorded and
the batch moves on. The result always carries both the succeeded and the
failed ids, so callers never have to assume all-or-nothing.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from . import export
from .exceptions import NotFoundError, TradeCoreError
from .ledger import PositionLedger
from .models import Position, TradeRecord

logger = logging.getLogger(__name__)


class BulkActionType(str, Enum):
    CLOSE = "close"
    MODIFY = "modify"
    EXPORT = "export"


@dataclass(frozen=True)
class BulkAction:
    """An action to apply to every selected position."""
    type: BulkActionType
    parameters: Dict[str, Any] = field(default_factory=dict)
    export_format: str = 'csv'

    @classmethod
    def close(cls) -> "BulkAction":
        return cls(BulkActionType.CLOSE)

    @classmethod
    def modify(cls, **parameters) -> "BulkAction":
        return cls(BulkActionType.MODIFY, parameters=parameters)

    @classmethod
    def export(cls, fmt: str = 'csv') -> "BulkAction":
        return cls(BulkActionType.EXPORT, export_format=fmt)


@dataclass(frozen=True)
class BulkFailure:
    id: str
    reason: str
    message: str = ''


@dataclass
class BulkResult:
    """Per-item outcome of a bulk action."""
    action: BulkActionType
    succeeded: List[str] = field(default_factory=list)
    failed: List[BulkFailure] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    cancelled: bool = False
    closed: List[TradeRecord] = field(default_factory=list)
    payload: Optional[str] = None

    @property
    def failed_ids(self) -> List[str]:
        return [f.id for f in self.failed]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed and not self.skipped


class CancelToken:
    """Cooperative cancellation flag checked between items."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class BulkExecutor:
    """Applies one action to many positions of a ledger."""

    def __init__(self, ledger: PositionLedger):
        self.ledger = ledger

    def execute(
        self,
        action: BulkAction,
        target_ids: Sequence[str],
        cancel_token: Optional[CancelToken] = None
    ) -> BulkResult:
        """
        Execute a bulk action.

        Args:
            action: What to do with each position
            target_ids: Selected position ids; duplicates are processed once
            cancel_token: Checked before each item; remaining ids are skipped

        Returns:
            BulkResult with succeeded, failed and skipped ids. Export results
            carry the serialized positions in ``payload``.

        Raises:
            ValueError: If the export format is not supported
        """
        if action.type is BulkActionType.EXPORT and action.export_format.lower() not in export.SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported export format: {action.export_format}")

        ids = list(dict.fromkeys(target_ids))
        result = BulkResult(action=action.type)
        exported: List[Position] = []
        # Every exported item is read from the same point-in-time map
        positions = self.ledger.snapshot_map() if action.type is BulkActionType.EXPORT else {}

        for index, position_id in enumerate(ids):
            if cancel_token is not None and cancel_token.cancelled:
                result.cancelled = True
                result.skipped = ids[index:]
                logger.info(f"Bulk {action.type.value} cancelled, {len(result.skipped)} items skipped")
                break

            try:
                if action.type is BulkActionType.CLOSE:
                    result.closed.append(self.ledger.close(position_id))
                elif action.type is BulkActionType.MODIFY:
                    self.ledger.modify(position_id, action.parameters)
                else:
                    if position_id not in positions:
                        raise NotFoundError(position_id)
                    exported.append(positions[position_id])
            except TradeCoreError as e:
                logger.warning(f"Bulk {action.type.value} failed for {position_id}: {e}")
                result.failed.append(BulkFailure(position_id, e.code, str(e)))
                continue

            result.succeeded.append(position_id)

        if action.type is BulkActionType.EXPORT:
            result.payload = export.serialize(exported, action.export_format)

        logger.info(
            f"Bulk {action.type.value}: {len(result.succeeded)} succeeded, "
            f"{len(result.failed)} failed"
        )
        return result
