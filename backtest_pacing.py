# backtest_pacing.py
# Python 3.10+ (ok on 3.12)
# pip install yfinance pandas numpy
#
# Replays the daily engine (straight-line pacing + whole-share optimizer) over
# historical daily closes, for several finish-date horizons.

import math
from datetime import timedelta

import numpy as np
import pandas as pd
import yfinance as yf

from allocation_optimizer import (
    allocation_error,
    compute_current_allocations,
    plan_cost,
    select_purchases,
)
from pacing import compute_daily_budget
from portfolio_state import PortfolioState, to_utc

# -----------------------------
# Config
# -----------------------------
IDEAL_ALLOCATIONS = {
    "VTI": 0.50,
    "VXUS": 0.30,
    "BND": 0.20,
}
TICKERS = list(IDEAL_ALLOCATIONS)

START = "2018-01-01"
END = None            # None = today

INITIAL_CASH = 50000.0
TARGET_RATIO = 1.0
HORIZONS_DAYS = [90, 180, 365]  # compare these

# -----------------------------
# Metrics helpers
# -----------------------------
def max_drawdown(series: pd.Series) -> float:
    peak = series.cummax()
    dd = series / peak - 1.0
    return float(dd.min())

def annualized_vol(returns: pd.Series, periods_per_year=252) -> float:
    if len(returns) < 2:
        return float("nan")
    return float(returns.std(ddof=1) * math.sqrt(periods_per_year))

# -----------------------------
# Data
# -----------------------------
def load_data(tickers, start, end=None) -> pd.DataFrame:
    px = yf.download(
        tickers,
        start=start,
        end=end,
        auto_adjust=True,
        progress=False,
        group_by="column",
        threads=True,
    )["Close"]

    if isinstance(px, pd.Series):
        px = px.to_frame(name=tickers[0])

    missing = [c for c in tickers if c not in px.columns]
    if missing:
        raise RuntimeError(f"Missing tickers in data: {missing}. Returned columns: {list(px.columns)}")

    # keep only days where every ticker has a close
    return px[tickers].dropna(how="any")

# -----------------------------
# Backtest engine (daily)
# -----------------------------
def run_backtest(
    closes: pd.DataFrame,
    horizon_days: int,
    ideal_allocations=None,
    initial_cash: float = INITIAL_CASH,
    ratio: float = TARGET_RATIO,
):
    ideal = dict(ideal_allocations or IDEAL_ALLOCATIONS)
    tickers = list(ideal)
    if closes.empty:
        raise RuntimeError("No price data to backtest")

    start = to_utc(closes.index[0].to_pydatetime())
    state = PortfolioState(
        last_funding_date=None,
        reference_equities={},
        ideal_allocations=ideal,
        target_investment_equity_ratio=ratio,
        finish_date=start + timedelta(days=horizon_days),
        target_equity=ratio * initial_cash,
    )

    shares = {t: 0 for t in tickers}
    cash = initial_cash
    rows = []

    for d, row in closes[tickers].iterrows():
        now = to_utc(d.to_pydatetime())
        prices = {t: float(row[t]) for t in tickers}
        values = {t: shares[t] * prices[t] for t in tickers}
        program_equity = sum(values.values())

        budget = min(compute_daily_budget(state, program_equity, now), cash)
        plan = select_purchases(
            budget,
            compute_current_allocations(values, tickers),
            ideal,
            prices,
            program_equity,
        )
        for t, qty in plan:
            shares[t] += qty
        cash -= plan_cost(plan, prices)
        state = state.with_updated_funding_date(now)

        values = {t: shares[t] * prices[t] for t in tickers}
        rows.append({
            "date": d,
            "equity": cash + sum(values.values()),
            "invested": sum(values.values()),
            "cash": cash,
            "budget": budget,
            "alloc_error": allocation_error(values, ideal),
        })

    curve = pd.DataFrame(rows).set_index("date")
    rets = curve["equity"].pct_change().dropna()
    in_horizon = curve[curve.index <= closes.index[0] + pd.Timedelta(days=horizon_days)]

    res = {
        "horizon_days": horizon_days,
        "start": str(curve.index[0].date()),
        "end": str(curve.index[-1].date()),
        "days": int(len(curve)),
        "final_value": float(curve["equity"].iloc[-1]),
        "deployed_pct": float((1.0 - curve["cash"].iloc[-1] / initial_cash) * 100.0),
        "avg_daily_budget": float(in_horizon["budget"].mean()),
        "final_alloc_error": float(curve["alloc_error"].iloc[-1]),
        "vol_annual": annualized_vol(rets),
        "max_dd": max_drawdown(curve["equity"]),
        "avg_cash": float(curve["cash"].mean()),
        "min_cash": float(curve["cash"].min()),
    }
    assert not np.isnan(res["final_value"]), "equity curve contains NaN"

    return res, curve

# -----------------------------
# Main
# -----------------------------
def main():
    daily = load_data(TICKERS, START, END)

    print(f"Common daily range (all tickers valid): {daily.index.min().date()} -> {daily.index.max().date()}")
    print(f"Trading days: {len(daily)}")

    results = []
    for horizon in HORIZONS_DAYS:
        res, _ = run_backtest(daily, horizon_days=horizon)
        results.append(res)

    summary = pd.DataFrame(results).sort_values("horizon_days")

    with pd.option_context("display.width", 200, "display.max_columns", 60):
        print("\n=== Summary (daily pacing backtest) ===")
        print(summary[[
            "horizon_days", "start", "end", "days",
            "final_value", "deployed_pct", "avg_daily_budget", "final_alloc_error",
            "vol_annual", "max_dd", "avg_cash", "min_cash"
        ]].to_string(index=False))

if __name__ == "__main__":
    main()
