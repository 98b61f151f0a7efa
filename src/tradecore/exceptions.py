"""Exception hierarchy and exit code mapping for TradeCore."""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models import FieldError


class TradeCoreError(Exception):
    """Base class for all domain errors raised by the core."""

    # Short reason code reported per item by bulk operations
    code = "Error"


class ConfigError(TradeCoreError):
    """Raised when configuration is invalid."""
    code = "ConfigError"


class DataError(TradeCoreError):
    """Raised when input data (positions file, ticks) is malformed."""
    code = "DataError"


class NotFoundError(TradeCoreError):
    """Raised when a position or order id is unknown."""
    code = "NotFound"

    def __init__(self, entity_id: str, kind: str = "position"):
        self.entity_id = entity_id
        self.kind = kind
        super().__init__(f"{kind.capitalize()} not found: {entity_id}")


class ImmutableFieldError(TradeCoreError):
    """Raised when a modify request touches a field that cannot change."""
    code = "ImmutableField"

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Field cannot be modified: {field}")


class ModificationRejectedError(TradeCoreError):
    """Raised when requested position levels fail validation.

    The individual field errors are kept on ``errors`` so callers can
    re-prompt per field.
    """
    code = "ValidationFailed"

    def __init__(self, position_id: str, errors: List["FieldError"]):
        self.position_id = position_id
        self.errors = errors
        codes = ", ".join(e.code for e in errors)
        super().__init__(f"Modification of {position_id} rejected: {codes}")


class OrderStateError(TradeCoreError):
    """Raised when an order in a terminal state is cancelled, modified or filled."""
    code = "InvalidState"

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} is {status} and can no longer change")


class InsufficientMarginError(TradeCoreError):
    """Raised when an order needs more margin than the account can provide."""
    code = "InsufficientMargin"

    def __init__(self, required: float, available: float, margin_level_after: Optional[float] = None):
        self.required = required
        self.available = available
        self.margin_level_after = margin_level_after
        super().__init__(
            f"Insufficient margin. Required: {required:.2f}, Available: {available:.2f}"
        )


class MarketClosedError(TradeCoreError):
    """Raised when a symbol cannot be traded right now."""
    code = "MarketClosed"

    def __init__(self, symbol: str, reason: str = "market is closed"):
        self.symbol = symbol
        super().__init__(f"Cannot trade {symbol}: {reason}")


class InvariantViolationError(TradeCoreError):
    """Raised when ledger state would break an invariant (a defect, never corrected)."""
    code = "InvariantViolation"


# Exit codes for CLI
EXIT_SUCCESS = 0           # Successful completion
EXIT_GENERAL_ERROR = 1     # Uncaught/unexpected exceptions
EXIT_CONFIG_ERROR = 2      # Configuration validation failures
EXIT_BLOCKED = 3           # Domain errors that block the action (margin, market closed)
EXIT_DATA_ERROR = 4        # Malformed positions/ticks input


class ExceptionMapper:
    """Maps exceptions to appropriate exit codes."""

    @staticmethod
    def map_to_exit_code(e: Exception) -> int:
        """
        Map an exception to an exit code.

        Args:
            e: The exception to map

        Returns:
            Exit code (0-4)
        """
        # Configuration errors
        if isinstance(e, ConfigError):
            return EXIT_CONFIG_ERROR

        # Data errors
        elif isinstance(e, (DataError, NotFoundError)):
            return EXIT_DATA_ERROR

        # Hard domain errors block the requested action
        elif isinstance(e, (InsufficientMarginError, MarketClosedError, OrderStateError,
                            ImmutableFieldError, ModificationRejectedError)):
            return EXIT_BLOCKED

        # Defects are general errors, never user errors
        elif isinstance(e, InvariantViolationError):
            return EXIT_GENERAL_ERROR

        # Value errors (often bad CLI arguments or config values)
        elif isinstance(e, ValueError):
            error_msg = str(e)

            if 'could not convert' in error_msg or 'Malformed' in error_msg:
                return EXIT_DATA_ERROR
            else:
                return EXIT_CONFIG_ERROR

        # Key errors (often configuration related)
        elif isinstance(e, KeyError):
            return EXIT_CONFIG_ERROR

        # Missing input files
        elif isinstance(e, FileNotFoundError):
            return EXIT_DATA_ERROR

        # Default to general error
        return EXIT_GENERAL_ERROR
