"""
Test proration for mid-period plan changes.

Pure arithmetic, no database needed.
"""
from datetime import datetime, timedelta, timezone

import pytest

from paybridge.features.billing.proration import calculate_proration, remaining_days
from paybridge.models.billing import CompanySubscription, Plan

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _plan(plan_id: str, price: int) -> Plan:
    return Plan(id=plan_id, name=plan_id.title(), price=price)


def _subscription(days_left: float) -> CompanySubscription:
    return CompanySubscription(
        id="sub_1",
        company_id="co_acme",
        plan_id="a",
        start_date=NOW - timedelta(days=30 - days_left),
        end_date=NOW + timedelta(days=days_left),
    )


def test_equal_prices_prorate_to_zero():
    assert calculate_proration(_subscription(15), _plan("a", 1000), _plan("b", 1000), now=NOW) == 0


def test_half_period_upgrade_charges_half_the_difference():
    assert calculate_proration(_subscription(15), _plan("a", 1000), _plan("b", 2000), now=NOW) == 500


def test_full_period_remaining_charges_full_difference():
    assert calculate_proration(_subscription(30), _plan("a", 1000), _plan("b", 2000), now=NOW) == 1000


def test_no_days_remaining_prorates_to_zero():
    assert calculate_proration(_subscription(0), _plan("a", 1000), _plan("b", 2000), now=NOW) == 0


def test_past_end_date_prorates_to_zero():
    assert calculate_proration(_subscription(-3), _plan("a", 1000), _plan("b", 2000), now=NOW) == 0


def test_downgrade_is_negative():
    assert calculate_proration(_subscription(15), _plan("b", 2000), _plan("a", 1000), now=NOW) == -500


def test_partial_day_counts_as_a_whole_day():
    # 14.25 days left rounds up to 15
    assert remaining_days(NOW + timedelta(days=14, hours=6), NOW) == 15
    assert calculate_proration(_subscription(14.25), _plan("a", 1000), _plan("b", 2000), now=NOW) == 500


def test_rounds_half_away_from_zero():
    # 1 * 1 / 2 = 0.5
    sub = _subscription(1)
    assert calculate_proration(sub, _plan("a", 1000), _plan("b", 1001), now=NOW, total_days=2) == 1
    assert calculate_proration(sub, _plan("b", 1001), _plan("a", 1000), now=NOW, total_days=2) == -1


def test_remaining_longer_than_total_is_not_clamped():
    assert calculate_proration(_subscription(45), _plan("a", 1000), _plan("b", 2000), now=NOW) == 1500


def test_total_days_must_be_positive():
    with pytest.raises(ValueError):
        calculate_proration(_subscription(15), _plan("a", 1000), _plan("b", 2000), now=NOW, total_days=0)


def test_uses_configured_billing_month(monkeypatch):
    from paybridge.core.config import settings

    monkeypatch.setattr(settings, "PRORATION_TOTAL_DAYS", 60)
    assert calculate_proration(_subscription(15), _plan("a", 1000), _plan("b", 2000), now=NOW) == 250
