#!/usr/bin/env python3
"""
daily_engine.py

One daily DCA run against the IBKR account:
- Reads state.json (reference equities, ideal allocations, target, finish date)
- Reads the account (cash, positions, prices) through the IBKR gateway
- Paces today's budget on a straight line to the target sleeve size
- Spends it on whole shares of the most under-weight symbols
- Places the orders and writes back last_funding_date

Design goals:
- Pre-existing holdings (reference equities) are ignored by the allocation math
- Deterministic + explainable output
- Buy only: nothing is ever sold

USAGE
-----
# Normal daily run (state.json in the current directory)
python daily_engine.py

# Plan only: no orders, state.json untouched
python daily_engine.py --dry-run

# First run: seed state.json from the current holdings, then run
python daily_engine.py --init-from-account --finish-date 2027-06-30 --ratio 1.0

# Write the run as machine-readable JSON
python daily_engine.py --output run.json
"""

from __future__ import annotations

import argparse
import json
import math
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

from allocation_optimizer import (
    MONEY_TOLERANCE,
    allocation_error,
    compute_current_allocations,
    compute_program_equities,
    group_shares,
    plan_cost,
    select_shares,
)
from ibkr_gateway import GatewayError, IbkrGateway, OrderError, settings_from_env
from pacing import compute_daily_budget, days_between, derive_target_equity, remaining_days
from portfolio_state import (
    ConfigError,
    PortfolioState,
    format_timestamp,
    load_state,
    parse_timestamp,
    save_state,
    seed_state_from_account,
)


# ----------------------------- helpers ----------------------------- #

def round_money(x: float) -> float:
    """Round money to cents."""
    if math.isnan(x):
        return x
    return float(f"{x:.2f}")


def format_table_row(cols: List[str], widths: List[int]) -> str:
    padded = []
    for c, w in zip(cols, widths):
        c = "" if c is None else str(c)
        padded.append(c[:w].ljust(w))
    return " | ".join(padded)


# ----------------------------- run result ----------------------------- #

@dataclass
class RunResult:
    state: PortfolioState
    now: datetime
    program_equities: Dict[str, float]
    program_equity: float
    current_allocations: Dict[str, float]
    prices: Dict[str, float]
    target_equity: float
    remaining_days: int
    daily_budget: float
    spendable_cash: float
    plan: List[Tuple[str, int]]
    filled: List[Dict[str, Any]] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    dropped: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def planned_spend(self) -> float:
        return plan_cost(self.plan, self.prices)

    def note(self, message: str) -> None:
        print(message)
        self.notes.append(message)


def spendable_cash(state: PortfolioState, cash_available: float, buying_power: float) -> float:
    """Margin-funded targets (ratio > 1) may spend buying power, otherwise cash only."""
    if state.target_investment_equity_ratio > 1.0:
        return buying_power
    return cash_available


def trim_to_cash(
    shares: List[str],
    prices: Dict[str, float],
    cash: float,
) -> Tuple[List[Tuple[str, int]], int]:
    """
    Undo shares newest-first until the rest fits in cash.

    `shares` is the buying order from select_shares; returns the grouped
    plan and the number of shares dropped.
    """
    kept = list(shares)
    total = sum(prices[s] for s in kept)
    while kept and total > cash + MONEY_TOLERANCE:
        total -= prices[kept.pop()]
    return group_shares(kept), len(shares) - len(kept)


# ----------------------------- orchestration ----------------------------- #

def run_daily(state: PortfolioState, gateway, now: datetime, dry_run: bool = False) -> RunResult:
    """
    One run: snapshot -> pacing -> purchases -> orders.

    GatewayError from the snapshot propagates. OrderError is recorded per
    symbol and the run completes. The returned state carries the new
    last_funding_date (and the target equity if it was derived now); saving
    it is up to the caller.
    """
    snapshot = gateway.get_account_snapshot(state.symbols)

    dropped = [s for s in state.symbols if s in snapshot.unavailable or s not in snapshot.positions]
    prices = {s: p for s, p in snapshot.prices().items() if s in state.ideal_allocations and s not in dropped}

    program_equities = compute_program_equities(snapshot.market_values(), state.reference_equities)
    program_equity = sum(program_equities.values())
    current_allocations = compute_current_allocations(program_equities, state.symbols)

    new_state = state
    target_equity = state.target_equity
    derived_note = None
    if target_equity is None:
        target_equity = derive_target_equity(
            state.target_investment_equity_ratio, snapshot.cash_available, program_equity
        )
        if target_equity > 0.0:
            new_state = new_state.with_target_equity(target_equity)
            derived_note = (
                f"Target equity derived and frozen: {target_equity:.2f} USD "
                f"(ratio {state.target_investment_equity_ratio:g} x sleeve capital)"
            )
        else:
            # left unset so the next run derives it again
            derived_note = "No cash or program equity to derive a target equity from: target left unset"

    days_left = remaining_days(now, state.finish_date)
    daily_budget = compute_daily_budget(state, program_equity, now, target_equity=target_equity)
    cash = spendable_cash(state, snapshot.cash_available, snapshot.buying_power)

    result = RunResult(
        state=new_state.with_updated_funding_date(now),
        now=now,
        program_equities=program_equities,
        program_equity=program_equity,
        current_allocations=current_allocations,
        prices=prices,
        target_equity=target_equity,
        remaining_days=days_left,
        daily_budget=daily_budget,
        spendable_cash=cash,
        plan=[],
        dropped=dropped,
    )

    if derived_note:
        result.note(derived_note)
    for symbol in dropped:
        result.note(f"{symbol}: unavailable at the broker, skipped for this run")
    if days_between(now, state.finish_date) < 1:
        result.note(
            f"Less than one day to finish date {format_timestamp(state.finish_date)}: "
            "remaining days clamped to 1, all remaining equity is due today"
        )
    if daily_budget <= 0.0:
        result.note(f"Target equity {target_equity:.2f} USD already reached: no purchases today")
        return result

    budget = min(daily_budget, cash)
    if budget < daily_budget:
        result.note(f"Daily budget {daily_budget:.2f} USD capped by spendable cash {cash:.2f} USD")

    shares = select_shares(budget, current_allocations, state.ideal_allocations, prices, program_equity)
    if not shares:
        result.note(f"Budget {budget:.2f} USD does not cover one share of any under-weight symbol")
        return result

    # the snapshot may be stale by now; re-check against live cash before sending anything
    live_cash = spendable_cash(state, *gateway.get_cash_balances())
    plan, trimmed = trim_to_cash(shares, prices, live_cash)
    if trimmed:
        result.note(f"Trimmed {trimmed} share(s) to fit live spendable cash {live_cash:.2f} USD")
    result.plan = plan
    if not plan:
        return result

    if dry_run:
        result.note("Dry run: no orders placed")
        return result

    for symbol, quantity in plan:
        try:
            result.filled.append(gateway.place_buy_order(symbol, quantity))
        except OrderError as e:
            print(f"Order failed for {symbol}: {e}")
            result.failed[symbol] = str(e)

    if result.failed and not result.filled:
        result.note("All orders failed; funding date is still recorded")
    return result


# ----------------------------- report ----------------------------- #

def print_report(state_path: Path, result: RunResult) -> None:
    state = result.state
    print("")
    print("=== Daily DCA Engine Report ===")
    print(f"state_path: {state_path}")
    print(f"run_at_utc: {format_timestamp(result.now)}")
    print(f"finish_date: {format_timestamp(state.finish_date)} ({result.remaining_days} day(s) left)")
    print("")

    headers = ["SYMBOL", "IDEAL%", "CUR%", "DEFICIT%", "PRICE", "PROG_USD", "BUY_QTY", "BUY_USD"]
    widths = [6, 7, 7, 8, 9, 11, 7, 10]
    print(format_table_row(headers, widths))
    print("-" * (sum(widths) + 3 * (len(widths) - 1)))

    bought = dict(result.plan)
    for symbol in state.symbols:
        ideal = state.ideal_allocations[symbol] * 100.0
        current = result.current_allocations.get(symbol, 0.0) * 100.0
        price = result.prices.get(symbol, float("nan"))
        qty = bought.get(symbol, 0)
        row = [
            symbol,
            f"{ideal:6.2f}",
            f"{current:6.2f}",
            f"{ideal - current:7.2f}",
            f"{price:8.2f}" if not math.isnan(price) else "     NaN",
            f"{result.program_equities.get(symbol, 0.0):10.2f}",
            f"{qty:6d}",
            f"{qty * price:9.2f}" if qty else "     0.00",
        ]
        print(format_table_row(row, widths))

    values_after = dict(result.program_equities)
    for symbol, qty in result.plan:
        values_after[symbol] = values_after.get(symbol, 0.0) + qty * result.prices[symbol]

    print("")
    print("Totals:")
    print(f"  Program equity:        {result.program_equity:.2f} USD")
    print(f"  Target equity:         {result.target_equity:.2f} USD")
    print(f"  Daily budget:          {result.daily_budget:.2f} USD")
    print(f"  Spendable cash:        {result.spendable_cash:.2f} USD")
    print(f"  Planned spend:         {result.planned_spend:.2f} USD")
    print(f"  Allocation error (L1): {allocation_error(result.program_equities, state.ideal_allocations):.4f}"
          f" -> {allocation_error(values_after, state.ideal_allocations):.4f}")
    if result.failed:
        print(f"  Failed orders:         {', '.join(sorted(result.failed))}")
    print("")

    print("Methodology:")
    print("  1) Program sleeve = positions minus the frozen reference equities (floored at 0 per symbol).")
    print("  2) Daily budget = (target_equity - program equity) / days left to finish_date (at least 1 day).")
    print("  3) Budget is spent one whole share at a time on the affordable symbol furthest below its")
    print("     ideal allocation; equal deficits go to the cheaper symbol. Nothing is sold.")
    print("  4) Any leftover below one share price stays as cash and is re-paced tomorrow.")
    print("")


def build_payload(state_path: Path, result: RunResult) -> Dict[str, Any]:
    return {
        "meta": {
            "generated_at_local": datetime.now().isoformat(timespec="seconds"),
            "run_at_utc": format_timestamp(result.now),
            "state_path": str(state_path),
        },
        "pacing": {
            "program_equity_usd": round_money(result.program_equity),
            "target_equity_usd": round_money(result.target_equity),
            "remaining_days": result.remaining_days,
            "daily_budget_usd": round_money(result.daily_budget),
            "spendable_cash_usd": round_money(result.spendable_cash),
        },
        "allocations": {
            symbol: {
                "ideal": result.state.ideal_allocations[symbol],
                "current": round(result.current_allocations.get(symbol, 0.0), 6),
                "price_usd": result.prices.get(symbol),
            }
            for symbol in result.state.symbols
        },
        "orders": [
            {"symbol": s, "quantity": q, "amount_usd": round_money(q * result.prices[s])}
            for s, q in result.plan
        ],
        "filled": result.filled,
        "failed": result.failed,
        "dropped": result.dropped,
        "notes": result.notes,
    }


def write_output_json(output_path: Path, payload: Dict[str, Any]) -> None:
    output_path.write_text(json.dumps(payload, indent=2, sort_keys=False), encoding="utf-8")


# ----------------------------- entry point ----------------------------- #

def seed_state(args: argparse.Namespace, state_path: Path, gateway, now: datetime) -> PortfolioState:
    finish_date = parse_timestamp(args.finish_date, "--finish-date") if args.finish_date else None
    snapshot = gateway.get_account_snapshot()
    state = seed_state_from_account(snapshot.market_values(), now, ratio=args.ratio, finish_date=finish_date)
    if not args.dry_run:
        save_state(state_path, state)
        print(f"Seeded new state file from current holdings: {state_path}")
    return state


def main(argv: Optional[List[str]] = None, gateway=None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--state", type=str, default="state.json", help="Path to state.json (default: ./state.json)")
    parser.add_argument("--output", type=str, default=None, help="Optional output JSON path (run report).")
    parser.add_argument("--dry-run", action="store_true", help="Compute and print the plan; no orders, state untouched.")
    parser.add_argument("--init-from-account", action="store_true", help="Seed state.json from current holdings if missing.")
    parser.add_argument("--finish-date", type=str, default=None, help="Seed finish date (ISO 8601), default now + 365 days.")
    parser.add_argument("--ratio", type=float, default=1.0, help="Seed target_investment_equity_ratio (default 1.0).")
    args = parser.parse_args(argv)

    state_path = Path(args.state).expanduser().resolve()
    now = datetime.now(timezone.utc)

    try:
        state = None
        if state_path.exists() or not args.init_from_account:
            state = load_state(state_path)
        if gateway is None:
            gateway = IbkrGateway(settings_from_env())
            gateway.connect()
        try:
            if state is None:
                state = seed_state(args, state_path, gateway, now)
            result = run_daily(state, gateway, now, dry_run=args.dry_run)
        finally:
            gateway.disconnect()
    except (ConfigError, GatewayError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print_report(state_path, result)

    if not args.dry_run:
        save_state(state_path, result.state)
        print(f"STATE_PATH={state_path}")

    if args.output:
        out_path = Path(args.output).expanduser().resolve()
        write_output_json(out_path, build_payload(state_path, result))
        print(f"OUTPUT_PATH={out_path}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
