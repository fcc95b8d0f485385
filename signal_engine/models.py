"""
Signal, position and exchange-view data types.

A ParsedSignal is the validated trading intent handed to the engine by the
(external) signal source. A Position is the engine-owned record of a filled
trade; it is created only after the fill is confirmed and is mutated only by
the lifecycle manager.

Examples:
    >>> from decimal import Decimal
    >>> signal = ParsedSignal(
    ...     pair="ID/USDT",
    ...     direction=Direction.LONG,
    ...     entry=Decimal("100"),
    ...     stop_loss=Decimal("98"),
    ...     take_profits=(
    ...         TakeProfitLevel(1, Decimal("102")),
    ...         TakeProfitLevel(2, Decimal("104")),
    ...     ),
    ...     confidence=90,
    ... )
    >>> signal.validate()
    []
    >>> normalize_symbol(signal.pair)
    'IDUSDT'
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, getcontext
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

getcontext().prec = 28


class InvalidSignal(ValueError):
    """Raised when a ParsedSignal violates its ladder or price invariants."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class Direction(str, Enum):
    """Trade direction."""

    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def order_side(self) -> str:
        """Exchange order side that opens a position in this direction."""
        return "Buy" if self is Direction.LONG else "Sell"

    @property
    def closing_side(self) -> str:
        """Exchange order side that reduces a position in this direction."""
        return "Sell" if self is Direction.LONG else "Buy"

    def is_more_favorable(self, candidate: Decimal, current: Decimal) -> bool:
        """True if ``candidate`` is a strictly better stop than ``current``."""
        if self is Direction.LONG:
            return candidate > current
        return candidate < current


class TradeStatus(str, Enum):
    """Position lifecycle states."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"


def normalize_symbol(pair: str) -> str:
    """Map a signal pair ("ID/USDT", "id-usdt") to an exchange symbol ("IDUSDT")."""
    return pair.replace("/", "").replace("-", "").upper()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TakeProfitLevel:
    level: int
    price: Decimal


@dataclass(frozen=True)
class ParsedSignal:
    """Validated trading intent.

    Attributes:
        pair: Instrument identifier as given by the signal source
        direction: LONG or SHORT
        entry: Entry price, or None to enter at the current market price
        stop_loss: Initial stop-loss price
        take_profits: Ladder ordered by level (1..n)
        confidence: Signal confidence score, 0-100
    """

    pair: str
    direction: Direction
    entry: Optional[Decimal]
    stop_loss: Decimal
    take_profits: Tuple[TakeProfitLevel, ...]
    confidence: float = 0.0

    @property
    def is_market_entry(self) -> bool:
        return self.entry is None

    @property
    def symbol(self) -> str:
        return normalize_symbol(self.pair)

    def validate(self) -> List[str]:
        """Return a list of invariant violations (empty when valid)."""
        errors: List[str] = []

        if not self.pair or not self.pair.strip():
            errors.append("Pair must not be empty")
        if self.stop_loss <= 0:
            errors.append("Stop loss must be positive")
        if self.entry is not None and self.entry <= 0:
            errors.append("Entry must be positive")
        if not 0 <= self.confidence <= 100:
            errors.append("Confidence must be between 0 and 100")

        if not self.take_profits:
            errors.append("At least one take-profit level is required")
            return errors

        levels = [tp.level for tp in self.take_profits]
        if levels != list(range(1, len(levels) + 1)):
            errors.append(f"Take-profit levels must be 1..{len(levels)} in order, got {levels}")

        long = self.direction is Direction.LONG
        for prev, nxt in zip(self.take_profits, self.take_profits[1:]):
            if long and nxt.price <= prev.price:
                errors.append(
                    f"For LONG, TP{nxt.level} ({nxt.price}) must be above TP{prev.level} ({prev.price})"
                )
            if not long and nxt.price >= prev.price:
                errors.append(
                    f"For SHORT, TP{nxt.level} ({nxt.price}) must be below TP{prev.level} ({prev.price})"
                )

        if self.entry is not None and self.entry > 0:
            first = self.take_profits[0]
            if long and first.price <= self.entry:
                errors.append(f"For LONG, TP{first.level} ({first.price}) must be above entry ({self.entry})")
            if not long and first.price >= self.entry:
                errors.append(f"For SHORT, TP{first.level} ({first.price}) must be below entry ({self.entry})")
            if long and self.stop_loss >= self.entry:
                errors.append(f"For LONG, stop loss ({self.stop_loss}) must be below entry ({self.entry})")
            if not long and self.stop_loss <= self.entry:
                errors.append(f"For SHORT, stop loss ({self.stop_loss}) must be above entry ({self.entry})")

        return errors

    def ensure_valid(self) -> None:
        errors = self.validate()
        if errors:
            raise InvalidSignal(errors)


@dataclass
class LadderLevel:
    """A take-profit level tracked on a live position."""

    level: int
    price: Decimal
    filled: bool = False


@dataclass
class Position:
    """Engine-owned record of a filled trade.

    Invariants:
        - stop_loss only ever moves in the favourable direction
        - take_profits keeps the signal's level order
    """

    id: str
    symbol: str
    side: Direction
    size: Decimal
    entry_price: Decimal
    current_price: Decimal
    stop_loss: Decimal
    take_profits: List[LadderLevel]
    leverage: int
    order_id: Optional[str] = None
    pnl: Decimal = Decimal("0")
    status: TradeStatus = TradeStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status is TradeStatus.ACTIVE

    def ladder_price(self, level: int) -> Optional[Decimal]:
        for tp in self.take_profits:
            if tp.level == level:
                return tp.price
        return None

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging and status snapshots (decimals as strings)."""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "size": str(self.size),
            "entry_price": str(self.entry_price),
            "current_price": str(self.current_price),
            "stop_loss": str(self.stop_loss),
            "take_profits": [
                {"level": tp.level, "price": str(tp.price), "filled": tp.filled}
                for tp in self.take_profits
            ],
            "leverage": self.leverage,
            "order_id": self.order_id,
            "pnl": str(self.pnl),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class PositionInfo:
    """Exchange-side view of a live position."""

    symbol: str
    side: str
    size: Decimal
    entry_price: Decimal
    mark_price: Decimal
    unrealised_pnl: Decimal
    leverage: Decimal
    position_status: str = "Normal"


@dataclass
class AccountBalance:
    coin: str
    wallet_balance: Decimal
    available_balance: Decimal


@dataclass
class OrderResponse:
    order_id: str
    symbol: str
    side: str
    order_type: str
    qty: Decimal
    price: Optional[Decimal] = None
    status: str = "Created"
    created_time: datetime = field(default_factory=utcnow)


@dataclass
class TradeResult:
    """Outcome of a successful trade execution."""

    order_id: str
    leverage: int
    position_size: Decimal
    entry_price: Decimal
