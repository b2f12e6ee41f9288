from datetime import timedelta

import pytest

from conftest import NOW, make_state
from pacing import compute_daily_budget, days_between, derive_target_equity, remaining_days


def test_straight_line_budget():
    state = make_state(finish_date=NOW + timedelta(days=10), target_equity=10000.0)
    assert compute_daily_budget(state, 0.0, NOW) == pytest.approx(1000.0)
    assert compute_daily_budget(state, 4000.0, NOW) == pytest.approx(600.0)


def test_budget_strictly_decreases_toward_target_then_zero():
    state = make_state(finish_date=NOW + timedelta(days=30), target_equity=9000.0)
    budgets = [compute_daily_budget(state, equity, NOW) for equity in (0.0, 1000.0, 5000.0, 8999.0)]
    assert all(b > 0 for b in budgets)
    assert budgets == sorted(budgets, reverse=True)
    assert len(set(budgets)) == len(budgets)
    assert compute_daily_budget(state, 9000.0, NOW) == 0.0
    assert compute_daily_budget(state, 12000.0, NOW) == 0.0


def test_finish_date_reached_makes_everything_due():
    state = make_state(finish_date=NOW, target_equity=5000.0)
    assert compute_daily_budget(state, 1500.0, NOW) == pytest.approx(3500.0)
    late = make_state(finish_date=NOW - timedelta(days=40), target_equity=5000.0)
    assert compute_daily_budget(late, 1500.0, NOW) == pytest.approx(3500.0)


def test_explicit_target_overrides_state():
    state = make_state(target_equity=None, finish_date=NOW + timedelta(days=4))
    assert compute_daily_budget(state, 0.0, NOW, target_equity=800.0) == pytest.approx(200.0)
    with pytest.raises(ValueError):
        compute_daily_budget(state, 0.0, NOW)


def test_days_between_truncates_partial_days():
    assert days_between(NOW, NOW + timedelta(days=10, hours=12)) == 10
    assert days_between(NOW, NOW + timedelta(hours=23)) == 0
    assert remaining_days(NOW, NOW + timedelta(hours=23)) == 1
    assert remaining_days(NOW, NOW - timedelta(days=3)) == 1


def test_derive_target_equity():
    assert derive_target_equity(1.0, 20000.0, 5000.0) == pytest.approx(25000.0)
    assert derive_target_equity(1.5, 10000.0, 0.0) == pytest.approx(15000.0)
    assert derive_target_equity(1.0, -50.0, 100.0) == pytest.approx(100.0)
