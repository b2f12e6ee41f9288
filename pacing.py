"""
Straight-line pacing of new money into the program sleeve.

Every run redraws the line from "where the sleeve is now" to "target by
finish_date", so missed days and market moves are absorbed instead of
accumulating as a debt.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from portfolio_state import PortfolioState, to_utc

SECONDS_PER_DAY = 86400.0


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end (truncated toward zero)."""
    return int((to_utc(end) - to_utc(start)).total_seconds() / SECONDS_PER_DAY)


def remaining_days(now: datetime, finish_date: datetime) -> int:
    """Never below 1: at or past finish_date everything left is due today."""
    return max(1, days_between(now, finish_date))


def derive_target_equity(ratio: float, cash_available: float, program_equity: float) -> float:
    """
    Frozen sleeve target, computed once: ratio x (cash + program-owned positions)
    on the first run. ratio > 1.0 means part of the target is margin-funded.
    """
    sleeve_capital = max(0.0, cash_available) + max(0.0, program_equity)
    return ratio * sleeve_capital


def compute_daily_budget(
    state: PortfolioState,
    program_equity: float,
    now: datetime,
    target_equity: Optional[float] = None,
) -> float:
    """
    USD to invest today.

    remaining_equity = max(0, target_equity - program_equity)
    daily_budget     = remaining_equity / remaining_days(now, finish_date)
    """
    if target_equity is None:
        target_equity = state.target_equity
    if target_equity is None:
        raise ValueError("target_equity is not set; derive it before pacing")

    remaining_equity = max(0.0, target_equity - program_equity)
    if remaining_equity <= 0.0:
        return 0.0
    return remaining_equity / remaining_days(now, state.finish_date)
