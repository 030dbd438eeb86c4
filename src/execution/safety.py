"""
Safety guard: kill switch, max daily loss and position-count enforcement.

Consulted by the tool dispatcher before every order placement, paper or live.

- kill_switch: immediately disables all order placement.
- max_daily_loss_pct: halts new orders when today's realized loss (from the
  position ledger) reaches the threshold. Resets with the calendar day.
- max_concurrent_positions: blocks opening a new exposure when that many
  positions are already active. Averaging into an existing one is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone

from execution.ledger import PositionLedger


@dataclass
class SafetyResult:
    allowed: bool
    reason: str = ""


class SafetyGuard:
    """Pre-placement safety checks.

    Parameters
    ----------
    ledger:
        Source of active-position counts and realized PnL.
    kill_switch:
        If True, all orders are blocked unconditionally.
    max_daily_loss_pct:
        Maximum allowed daily loss as percentage of capital_base.
    capital_base:
        Starting equity for percentage calculations.
    max_concurrent_positions:
        Active-position ceiling for new exposures.
    """

    def __init__(
        self,
        ledger: PositionLedger,
        *,
        kill_switch: bool = False,
        max_daily_loss_pct: float = 3.0,
        capital_base: float = 100_000.0,
        max_concurrent_positions: int = 2,
    ) -> None:
        self._ledger = ledger
        self._kill_switch = kill_switch
        self._max_daily_loss_pct = max_daily_loss_pct
        self._capital_base = capital_base
        self._max_positions = max_concurrent_positions

    @property
    def kill_switch(self) -> bool:
        return self._kill_switch

    @property
    def max_daily_loss(self) -> float:
        return self._capital_base * (self._max_daily_loss_pct / 100.0)

    def check(
        self,
        *,
        segment: str | None = None,
        security_id: str | None = None,
        today: date | None = None,
    ) -> SafetyResult:
        """Check all safety conditions before order placement.

        Returns SafetyResult with allowed=True if trading is permitted,
        or allowed=False with a reason string.
        """
        if self._kill_switch:
            return SafetyResult(allowed=False, reason="Kill switch is ON - all trading disabled")

        if today is None:
            today = datetime.now(timezone.utc).date()
        daily_pnl = float(self._ledger.realized_pnl_for(today))
        loss_limit = self.max_daily_loss
        if daily_pnl < 0 and abs(daily_pnl) >= loss_limit:
            return SafetyResult(
                allowed=False,
                reason=f"Daily loss limit breached: ₹{daily_pnl:.2f} "
                       f"(limit: -₹{loss_limit:.2f}, {self._max_daily_loss_pct}%)",
            )

        averaging = (
            segment is not None
            and security_id is not None
            and self._ledger.get_active(segment, security_id) is not None
        )
        if not averaging and self._ledger.count_active() >= self._max_positions:
            return SafetyResult(
                allowed=False,
                reason=f"Max concurrent positions reached ({self._max_positions})",
            )

        return SafetyResult(allowed=True)
