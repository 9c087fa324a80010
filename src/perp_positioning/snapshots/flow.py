"""Position flow between two full position snapshots.

The sampler periodically stores every open position of a coin under one
snapshot id. Diffing two snapshots gives a per-wallet change list, and
folding that list gives side flows: how much capital entered or left the
long and short books between the two captures.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from perp_positioning.snapshots.models import PositionSnapshot
from perp_positioning.tracker.models import DeltaKind
from perp_positioning.tracker.position_tracker import classify

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS_LIMIT = 10


class ChangeType(str, Enum):
    """How one wallet's position moved between two snapshots."""

    NEW = "NEW"
    INCREASED = "INCREASED"
    DECREASED = "DECREASED"
    CLOSED = "CLOSED"
    FLIPPED = "FLIPPED"


def _change_type(kind: DeltaKind) -> ChangeType:
    if kind.is_new:
        return ChangeType.NEW
    if kind.is_increase:
        return ChangeType.INCREASED
    if kind.is_decrease:
        return ChangeType.DECREASED
    if kind.is_close:
        return ChangeType.CLOSED
    return ChangeType.FLIPPED


@dataclass(frozen=True)
class PositionChange:
    """One wallet's position change between a previous and current snapshot.

    Attributes:
        address: Wallet address.
        change_type: Transition, classified by the signed sizes.
        size: Current signed size (0 when closed).
        notional: Current absolute notional (0 when closed).
        previous_size: Previous signed size (0 when new).
        previous_notional: Previous absolute notional (0 when new).
        entry_price: Entry price from the most recent row for the wallet.
        leverage: Leverage from the most recent row for the wallet.
        leverage_type: "cross" or "isolated".
    """

    address: str
    change_type: ChangeType
    size: Decimal
    notional: Decimal
    previous_size: Decimal
    previous_notional: Decimal
    entry_price: Decimal | None = None
    leverage: Decimal | None = None
    leverage_type: str = "cross"

    @property
    def side(self) -> str:
        """Side after the change; a closed position keeps its old side."""
        size = self.previous_size if self.change_type == ChangeType.CLOSED else self.size
        return "long" if size > 0 else "short"

    @property
    def previous_side(self) -> str | None:
        if self.previous_size == 0:
            return None
        return "long" if self.previous_size > 0 else "short"

    @property
    def size_delta(self) -> Decimal:
        return self.size - self.previous_size

    @property
    def notional_delta(self) -> Decimal:
        return self.notional - self.previous_notional

    @property
    def flow_notional(self) -> Decimal:
        """Capital moved on the current side.

        Adds and reductions are valued at the current mark
        (notional / size), so a pure price move is never counted as flow.
        """
        if self.change_type in (ChangeType.INCREASED, ChangeType.DECREASED):
            mark = self.notional / abs(self.size)
            return abs(self.size_delta) * mark
        if self.change_type == ChangeType.CLOSED:
            return self.previous_notional
        return self.notional

    def to_dict(self) -> dict[str, object]:
        return {
            "address": self.address,
            "change_type": self.change_type.value,
            "side": self.side,
            "size": float(self.size),
            "notional": float(self.notional),
            "previous_size": float(self.previous_size) if self.previous_side else None,
            "previous_notional": float(self.previous_notional) if self.previous_side else None,
            "size_delta": float(self.size_delta),
            "notional_delta": float(self.notional_delta),
            "entry_price": float(self.entry_price) if self.entry_price is not None else None,
            "leverage": float(self.leverage) if self.leverage is not None else None,
            "leverage_type": self.leverage_type,
        }


def _index(
    positions: Iterable[PositionSnapshot],
    *,
    min_notional: Decimal,
    side: str | None,
) -> dict[str, PositionSnapshot]:
    indexed: dict[str, PositionSnapshot] = {}
    for position in positions:
        if position.size == 0 or position.abs_notional < min_notional:
            continue
        if side is not None and position.side != side:
            continue
        indexed[position.address] = position
    return indexed


def diff_positions(
    previous: Iterable[PositionSnapshot],
    current: Iterable[PositionSnapshot],
    *,
    min_notional: Decimal = Decimal(0),
    side: str | None = None,
) -> list[PositionChange]:
    """Per-wallet changes from ``previous`` to ``current``.

    Args:
        previous: Rows of the older snapshot.
        current: Rows of the newer snapshot.
        min_notional: Rows below this absolute notional are treated as flat.
        side: "long" or "short" to diff only that book. A wallet that
            flipped then shows up as closed in one book and new in the other.

    Returns:
        Changes sorted by absolute notional delta, largest first. Wallets
        whose size did not change are omitted.
    """
    if side not in (None, "long", "short"):
        raise ValueError(f"side must be 'long' or 'short', got {side!r}")
    before = _index(previous, min_notional=min_notional, side=side)
    after = _index(current, min_notional=min_notional, side=side)

    changes: list[PositionChange] = []
    for address, now in after.items():
        prev = before.get(address)
        previous_size = prev.size if prev is not None else Decimal(0)
        if now.size == previous_size:
            continue
        changes.append(
            PositionChange(
                address=address,
                change_type=_change_type(classify(previous_size, now.size)),
                size=now.size,
                notional=now.abs_notional,
                previous_size=previous_size,
                previous_notional=prev.abs_notional if prev is not None else Decimal(0),
                entry_price=now.entry_price,
                leverage=now.leverage,
                leverage_type=now.leverage_type,
            )
        )
    for address, prev in before.items():
        if address in after:
            continue
        changes.append(
            PositionChange(
                address=address,
                change_type=ChangeType.CLOSED,
                size=Decimal(0),
                notional=Decimal(0),
                previous_size=prev.size,
                previous_notional=prev.abs_notional,
                entry_price=prev.entry_price,
                leverage=prev.leverage,
                leverage_type=prev.leverage_type,
            )
        )

    changes.sort(key=lambda c: abs(c.notional_delta), reverse=True)
    return changes


@dataclass
class FlowCategory:
    """Wallet count and notional for one kind of move on one side."""

    count: int = 0
    notional: Decimal = Decimal(0)
    entries: list[tuple[str, Decimal]] = field(default_factory=list)

    def add(self, address: str, notional: Decimal) -> None:
        self.count += 1
        self.notional += notional
        self.entries.append((address, notional))

    @property
    def avg_notional(self) -> Decimal:
        return self.notional / self.count if self.count else Decimal(0)

    def addresses(self, limit: int | None = None) -> list[str]:
        """Addresses by notional moved, largest first."""
        ranked = sorted(self.entries, key=lambda e: e[1], reverse=True)
        return [address for address, _ in ranked[:limit]]

    def to_dict(self, address_limit: int | None = DEFAULT_ADDRESS_LIMIT) -> dict[str, object]:
        return {
            "count": self.count,
            "notional": float(self.notional),
            "avg_notional": float(self.avg_notional),
            "addresses": self.addresses(address_limit),
        }


@dataclass
class SideFlow:
    """Flow into and out of one side's book."""

    new: FlowCategory = field(default_factory=FlowCategory)
    adding: FlowCategory = field(default_factory=FlowCategory)
    reducing: FlowCategory = field(default_factory=FlowCategory)
    closed: FlowCategory = field(default_factory=FlowCategory)

    @property
    def inflow(self) -> Decimal:
        return self.new.notional + self.adding.notional

    @property
    def outflow(self) -> Decimal:
        return self.reducing.notional + self.closed.notional

    @property
    def net_flow(self) -> Decimal:
        return self.inflow - self.outflow

    def to_dict(self, address_limit: int | None = DEFAULT_ADDRESS_LIMIT) -> dict[str, object]:
        return {
            "new": self.new.to_dict(address_limit),
            "adding": self.adding.to_dict(address_limit),
            "reducing": self.reducing.to_dict(address_limit),
            "closed": self.closed.to_dict(address_limit),
            "total_inflow": float(self.inflow),
            "total_outflow": float(self.outflow),
            "net_flow": float(self.net_flow),
        }


@dataclass
class PositionFlow:
    """Long and short book flows between two snapshots, with a summary."""

    longs: SideFlow = field(default_factory=SideFlow)
    shorts: SideFlow = field(default_factory=SideFlow)

    def side(self, name: str) -> SideFlow:
        return self.longs if name == "long" else self.shorts

    @property
    def fresh_capital(self) -> Decimal:
        return self.longs.inflow + self.shorts.inflow

    @property
    def exits(self) -> Decimal:
        return self.longs.outflow + self.shorts.outflow

    @property
    def net_flow(self) -> Decimal:
        """Long net flow minus short net flow; positive leans long."""
        return self.longs.net_flow - self.shorts.net_flow

    @property
    def net_direction(self) -> str:
        if self.net_flow > 0:
            return "LONG"
        if self.net_flow < 0:
            return "SHORT"
        return "NEUTRAL"

    @property
    def conviction_score(self) -> int:
        """-100 (all flow favours shorts) to +100 (all flow favours longs)."""
        total = abs(self.longs.net_flow) + abs(self.shorts.net_flow)
        if total == 0:
            return 0
        score = self.net_flow / total * 100
        return int(score.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def total_new_traders(self) -> int:
        return self.longs.new.count + self.shorts.new.count

    @property
    def total_closed_traders(self) -> int:
        return self.longs.closed.count + self.shorts.closed.count

    def to_dict(self, address_limit: int | None = DEFAULT_ADDRESS_LIMIT) -> dict[str, object]:
        return {
            "longs": self.longs.to_dict(address_limit),
            "shorts": self.shorts.to_dict(address_limit),
            "summary": {
                "fresh_capital": float(self.fresh_capital),
                "exits": float(self.exits),
                "net_flow": float(self.net_flow),
                "net_direction": self.net_direction,
                "conviction_score": self.conviction_score,
                "total_new_traders": self.total_new_traders,
                "total_closed_traders": self.total_closed_traders,
            },
        }


def compute_flow(changes: Iterable[PositionChange]) -> PositionFlow:
    """Fold a change list into side flows.

    A flip counts as a close of the old side plus a new position on the
    other side.
    """
    flow = PositionFlow()
    for change in changes:
        if change.change_type == ChangeType.NEW:
            flow.side(change.side).new.add(change.address, change.notional)
        elif change.change_type == ChangeType.INCREASED:
            flow.side(change.side).adding.add(change.address, change.flow_notional)
        elif change.change_type == ChangeType.DECREASED:
            flow.side(change.side).reducing.add(change.address, change.flow_notional)
        elif change.change_type == ChangeType.CLOSED:
            flow.side(change.side).closed.add(change.address, change.previous_notional)
        else:
            old_side = change.previous_side or change.side
            flow.side(old_side).closed.add(change.address, change.previous_notional)
            flow.side(change.side).new.add(change.address, change.notional)
    logger.debug(
        "Computed flow: fresh=%s exits=%s direction=%s",
        flow.fresh_capital,
        flow.exits,
        flow.net_direction,
    )
    return flow
