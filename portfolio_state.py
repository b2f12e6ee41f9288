#!/usr/bin/env python3
"""
portfolio_state.py

Persisted state of the daily DCA engine (state.json):

- last_funding_date: ISO 8601 timestamp of the last run (null before the first one)
- reference_equities: {symbol: USD value} held BEFORE the program started (frozen)
- ideal_allocations: {symbol: fraction} target composition of the program's own sleeve
- target_investment_equity_ratio: 1.0 = cash only, > 1.0 = margin-funded target
- finish_date: ISO 8601 timestamp by which the target sleeve size should be reached
- target_equity: frozen USD target of the sleeve (optional, derived on first run)

The engine never edits reference_equities or ideal_allocations; they are user-owned.
"""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Any, Optional

ALLOCATION_SUM_TOLERANCE = 1e-6
DEFAULT_HORIZON_DAYS = 365

REQUIRED_FIELDS = (
    "reference_equities",
    "ideal_allocations",
    "target_investment_equity_ratio",
    "finish_date",
)


class ConfigError(ValueError):
    """Malformed or invariant-violating state file."""


@dataclass(frozen=True)
class PortfolioState:
    last_funding_date: Optional[datetime]
    reference_equities: Dict[str, float]
    ideal_allocations: Dict[str, float]
    target_investment_equity_ratio: float
    finish_date: datetime
    target_equity: Optional[float] = None

    @property
    def symbols(self) -> list:
        return sorted(self.ideal_allocations)

    def with_updated_funding_date(self, now: datetime) -> "PortfolioState":
        return replace(self, last_funding_date=to_utc(now))

    def with_target_equity(self, target_equity: float) -> "PortfolioState":
        return replace(self, target_equity=float(target_equity))


# ----------------------------- timestamps ----------------------------- #

def to_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any, field_name: str) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{field_name}: expected an ISO 8601 timestamp, got {value!r}")
    text = value.strip()
    # fromisoformat() only accepts a trailing 'Z' from Python 3.11 on
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(text))
    except ValueError as e:
        raise ConfigError(f"{field_name}: invalid ISO 8601 timestamp {value!r} ({e})") from e


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return to_utc(dt).isoformat().replace("+00:00", "Z")


# ----------------------------- validation ----------------------------- #

def _as_number(value: Any, field_name: str) -> float:
    # bool is an int subclass; "true" is not a dollar amount
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{field_name}: expected a number, got {value!r}")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ConfigError(f"{field_name}: expected a finite number, got {value!r}")
    return number


def _as_symbol_map(value: Any, field_name: str) -> Dict[str, float]:
    if not isinstance(value, dict):
        raise ConfigError(f"{field_name}: expected an object of symbol -> number")
    result: Dict[str, float] = {}
    for symbol, amount in value.items():
        if not isinstance(symbol, str) or not symbol.strip():
            raise ConfigError(f"{field_name}: invalid symbol {symbol!r}")
        result[symbol] = _as_number(amount, f"{field_name}.{symbol}")
    return result


def validate_ideal_allocations(ideal_allocations: Dict[str, float]) -> None:
    if not ideal_allocations:
        raise ConfigError("ideal_allocations: at least one symbol is required")
    for symbol, fraction in ideal_allocations.items():
        if fraction < 0.0 or fraction > 1.0:
            raise ConfigError(f"ideal_allocations.{symbol}: fraction {fraction} outside [0, 1]")
    total = sum(ideal_allocations.values())
    if abs(total - 1.0) > ALLOCATION_SUM_TOLERANCE:
        raise ConfigError(
            f"ideal_allocations must sum to 1.0 (tolerance {ALLOCATION_SUM_TOLERANCE}), got {total:.9f}"
        )


def state_from_dict(raw: Any) -> PortfolioState:
    """Parse and validate the state file schema. Raises ConfigError."""
    if not isinstance(raw, dict):
        raise ConfigError("state: expected a JSON object")

    missing = [name for name in REQUIRED_FIELDS if name not in raw]
    if missing:
        raise ConfigError(f"state: missing required field(s): {', '.join(missing)}")

    reference_equities = _as_symbol_map(raw["reference_equities"], "reference_equities")
    for symbol, value in reference_equities.items():
        if value < 0.0:
            raise ConfigError(f"reference_equities.{symbol}: negative value {value}")

    ideal_allocations = _as_symbol_map(raw["ideal_allocations"], "ideal_allocations")
    validate_ideal_allocations(ideal_allocations)

    ratio = _as_number(raw["target_investment_equity_ratio"], "target_investment_equity_ratio")
    if ratio <= 0.0:
        raise ConfigError(f"target_investment_equity_ratio must be > 0, got {ratio}")

    finish_date = parse_timestamp(raw["finish_date"], "finish_date")

    last_raw = raw.get("last_funding_date")
    last_funding_date = None if last_raw is None else parse_timestamp(last_raw, "last_funding_date")

    target_raw = raw.get("target_equity")
    target_equity = None
    if target_raw is not None:
        target_equity = _as_number(target_raw, "target_equity")
        if target_equity <= 0.0:
            raise ConfigError(f"target_equity must be > 0 when set, got {target_equity}")

    return PortfolioState(
        last_funding_date=last_funding_date,
        reference_equities=reference_equities,
        ideal_allocations=ideal_allocations,
        target_investment_equity_ratio=ratio,
        finish_date=finish_date,
        target_equity=target_equity,
    )


def state_to_dict(state: PortfolioState) -> Dict[str, Any]:
    return {
        "last_funding_date": format_timestamp(state.last_funding_date),
        "reference_equities": dict(state.reference_equities),
        "ideal_allocations": dict(state.ideal_allocations),
        "target_investment_equity_ratio": state.target_investment_equity_ratio,
        "finish_date": format_timestamp(state.finish_date),
        "target_equity": state.target_equity,
    }


# ----------------------------- file I/O ----------------------------- #

def load_state(state_path: Path) -> PortfolioState:
    try:
        text = state_path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigError(f"state file not found: {state_path}") from e
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"state file is not valid JSON: {state_path} ({e})") from e
    return state_from_dict(raw)


def save_state(state_path: Path, state: PortfolioState) -> None:
    """Write a sibling temp file, then swap it in; a failed write leaves the old file intact."""
    tmp_path = state_path.with_name(state_path.name + ".tmp")
    tmp_path.write_text(json.dumps(state_to_dict(state), indent=2), encoding="utf-8")
    os.replace(tmp_path, state_path)


# ----------------------------- first run ----------------------------- #

def seed_state_from_account(
    market_values: Dict[str, float],
    now: datetime,
    ratio: float = 1.0,
    finish_date: Optional[datetime] = None,
) -> PortfolioState:
    """
    Build a first-run state from the account's current holdings:
    everything held today becomes reference equity, and the program's
    ideal allocation mirrors today's invested weights.
    """
    held = {s: float(v) for s, v in market_values.items() if v > 0}
    total_invested = sum(held.values())
    if total_invested <= 0:
        raise ConfigError(
            "cannot seed state from an account without positions; write state.json by hand "
            "(see state.example.json)"
        )
    if ratio <= 0:
        raise ConfigError(f"target_investment_equity_ratio must be > 0, got {ratio}")

    now = to_utc(now)
    return PortfolioState(
        last_funding_date=None,
        reference_equities=held,
        ideal_allocations={s: v / total_invested for s, v in held.items()},
        target_investment_equity_ratio=float(ratio),
        finish_date=to_utc(finish_date) if finish_date else now + timedelta(days=DEFAULT_HORIZON_DAYS),
        target_equity=None,
    )
