"""
Whole-share allocation of the daily budget.

The program sleeve is what the account holds beyond the frozen reference
equities. Each run buys one share at a time, always of the affordable
under-weight symbol that is furthest below its ideal fraction, until the
budget no longer covers any candidate. Nothing is ever sold.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

DEFICIT_TIE_TOLERANCE = 1e-12
BALANCED_TOLERANCE = 1e-6
MONEY_TOLERANCE = 1e-9


def compute_program_equities(
    market_values: Dict[str, float],
    reference_equities: Dict[str, float],
) -> Dict[str, float]:
    """
    Program-owned USD value per held symbol.

    The reference amount is subtracted only for symbols still held, and each
    result is floored at 0 (a reference position partly sold outside the
    program does not become negative program equity).
    """
    return {
        symbol: max(0.0, float(value) - reference_equities.get(symbol, 0.0))
        for symbol, value in market_values.items()
    }


def compute_current_allocations(
    program_equities: Dict[str, float],
    symbols: List[str],
) -> Dict[str, float]:
    total = sum(program_equities.values())
    if total <= 0:
        return {s: 0.0 for s in symbols}
    return {s: program_equities.get(s, 0.0) / total for s in symbols}


def allocation_error(values: Dict[str, float], ideal_allocations: Dict[str, float]) -> float:
    """L1 distance between the sleeve's composition and the ideal one."""
    total = sum(values.get(s, 0.0) for s in ideal_allocations)
    if total <= 0:
        return sum(ideal_allocations.values())
    return sum(abs(values.get(s, 0.0) / total - ideal) for s, ideal in ideal_allocations.items())


def _pick_symbol(
    candidates: List[str],
    values: Dict[str, float],
    prices: Dict[str, float],
    ideal_allocations: Dict[str, float],
    sleeve_after_run: float,
    remaining_budget: float,
) -> Optional[str]:
    best_symbol: Optional[str] = None
    best_deficit = 0.0
    # cheapest first, so an equal deficit keeps the cheaper symbol
    for symbol in sorted(candidates, key=lambda s: (prices[s], s)):
        if prices[symbol] > remaining_budget + MONEY_TOLERANCE:
            continue
        deficit = ideal_allocations[symbol] - values[symbol] / sleeve_after_run
        if deficit <= DEFICIT_TIE_TOLERANCE:
            continue
        if best_symbol is None or deficit > best_deficit + DEFICIT_TIE_TOLERANCE:
            best_symbol = symbol
            best_deficit = deficit
    return best_symbol


def select_shares(
    budget: float,
    current_allocations: Dict[str, float],
    ideal_allocations: Dict[str, float],
    prices: Dict[str, float],
    program_equity: float,
) -> List[str]:
    """
    Greedy share-by-share selection; one symbol per share, in buying order.

    Candidates are the symbols priced > 0 whose current allocation is below
    ideal; symbols above ideal are left alone for this run. A sleeve already
    on target (no deviation above BALANCED_TOLERANCE, e.g. a single symbol)
    keeps its priced symbols that are not over-weight as candidates.
    Deficits are measured against the sleeve size once this run's budget is
    spent (program_equity + budget) and recomputed after every share.
    """
    if budget <= 0:
        return []

    priced = [symbol for symbol in ideal_allocations if prices.get(symbol, 0.0) > 0]
    deficits = {s: ideal_allocations[s] - current_allocations.get(s, 0.0) for s in priced}
    candidates = [s for s in priced if deficits[s] > BALANCED_TOLERANCE]
    if not candidates and all(abs(d) <= BALANCED_TOLERANCE for d in deficits.values()):
        candidates = [s for s in priced if deficits[s] >= 0.0]
    if not candidates:
        return []

    values = {s: current_allocations.get(s, 0.0) * program_equity for s in candidates}
    sleeve_after_run = program_equity + budget
    remaining_budget = budget

    shares: List[str] = []
    while True:
        symbol = _pick_symbol(candidates, values, prices, ideal_allocations, sleeve_after_run, remaining_budget)
        if symbol is None:
            break
        price = prices[symbol]
        remaining_budget -= price
        values[symbol] += price
        shares.append(symbol)
    return shares


def group_shares(shares: List[str]) -> List[Tuple[str, int]]:
    """[(symbol, quantity), ...] in order of first purchase."""
    quantities: Dict[str, int] = {}
    for symbol in shares:
        quantities[symbol] = quantities.get(symbol, 0) + 1
    return list(quantities.items())


def select_purchases(
    budget: float,
    current_allocations: Dict[str, float],
    ideal_allocations: Dict[str, float],
    prices: Dict[str, float],
    program_equity: float,
) -> List[Tuple[str, int]]:
    """Greedy whole-share purchase plan, see select_shares."""
    return group_shares(select_shares(budget, current_allocations, ideal_allocations, prices, program_equity))


def plan_cost(plan: List[Tuple[str, int]], prices: Dict[str, float]) -> float:
    return sum(prices[symbol] * quantity for symbol, quantity in plan)
