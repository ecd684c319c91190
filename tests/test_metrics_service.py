from datetime import datetime, timezone

import pytest

from admin.errors import Forbidden
from admin.services.metrics_service import MetricsService
from admin.services.time_ranges import parse_date_range
from helpers import make_customer, make_subscription, ts

NOW = datetime(2026, 2, 1, tzinfo=timezone.utc)


@pytest.fixture
def catalog(gateway):
    gateway.products["prod_mentor"] = {"id": "prod_mentor", "name": "Mentorship", "active": True}
    gateway.prices["price_pro"] = {
        "id": "price_pro", "product": "prod_mentor", "unit_amount": 15000,
        "currency": "eur", "tax_behavior": "inclusive",
    }
    return gateway


def _run(gateway, start="2026-01-01", end="2026-01-31", now=NOW):
    svc = MetricsService(gateway, clock=lambda: now)
    return svc.aggregate(*parse_date_range(start, end), is_admin=True)


def _product(result, product_id):
    return next(p for p in result["products"] if p["productId"] == product_id)


def test_non_admin_is_rejected_before_any_provider_call(app, gateway):
    with pytest.raises(Forbidden):
        MetricsService(gateway).aggregate(*parse_date_range("2026-01-01", "2026-01-31"), is_admin=False)
    assert gateway.calls == []


def test_trial_in_germany_end_to_end(app, catalog):
    catalog.subscriptions.append(make_subscription(
        customer=make_customer(country="DE"), status="trialing",
        created=ts(2026, 1, 15), period_end=ts(2026, 3, 1),
    ))

    result = _run(catalog)

    assert result["period"] == {"from": "2026-01-01", "to": "2026-01-31"}
    mentor = _product(result, "prod_mentor")
    assert mentor["productName"] == "Mentorship"
    assert mentor["activeOrTrialing"] == 1
    assert mentor["trialing"] == 1
    assert mentor["paying"] == 0
    assert mentor["expectedMonthlyGross"] == 150.00
    assert mentor["expectedMonthlyNet"] == pytest.approx(126.05, abs=0.01)
    assert mentor["expectedYearlyGross"] == 1800.00
    assert mentor["countryBreakdown"] == [{
        "country": "DE", "activeOrTrialing": 1, "paying": 0,
        "expectedMonthlyGross": 150.0, "expectedMonthlyNet": 126.05,
    }]

    [timeline] = result["timeline"]
    assert timeline["points"] == [{"month": "2026-01", "signups": 1, "churns": 0, "gross": 0.0, "net": 0.0}]
    [signup] = result["recentEvents"]
    assert signup["type"] == "signup"
    assert signup["at"] == "2026-01-15T00:00:00Z"
    assert signup["country"] == "DE"


def test_every_product_gets_one_point_per_month(app, catalog):
    catalog.products["prod_group"] = {"id": "prod_group", "name": "Group calls", "active": True}
    catalog.prices["price_group"] = {"id": "price_group", "product": "prod_group", "unit_amount": 4900, "currency": "eur"}
    catalog.subscriptions += [
        make_subscription("sub_1", customer=make_customer(), created=ts(2026, 2, 3)),
        make_subscription("sub_2", customer=make_customer("cus_2"), price="price_group", created=ts(2026, 3, 10)),
    ]

    result = _run(catalog, "2026-01-01", "2026-04-30")

    assert [t["productName"] for t in result["timeline"]] == ["Group calls", "Mentorship"]
    for t in result["timeline"]:
        assert [p["month"] for p in t["points"]] == ["2026-01", "2026-02", "2026-03", "2026-04"]
    group = next(t for t in result["timeline"] if t["productId"] == "prod_group")
    assert [p["signups"] for p in group["points"]] == [0, 0, 1, 0]


def test_archived_product_with_only_history_is_dropped(app, catalog):
    catalog.products["prod_old"] = {"id": "prod_old", "name": "Legacy", "active": False}
    catalog.prices["price_old"] = {"id": "price_old", "product": "prod_old", "unit_amount": 9900, "currency": "eur"}
    catalog.subscriptions += [
        make_subscription("sub_old", price="price_old", status="canceled",
                          created=ts(2024, 1, 1), ended_at=ts(2025, 12, 1), period_end=ts(2025, 12, 1)),
        make_subscription("sub_new", customer=make_customer()),
    ]

    result = _run(catalog)

    assert [p["productId"] for p in result["products"]] == ["prod_mentor"]
    assert [t["productId"] for t in result["timeline"]] == ["prod_mentor"]


def test_product_without_activity_in_range_has_no_timeline(app, catalog):
    catalog.subscriptions.append(make_subscription(customer=make_customer(), created=ts(2025, 6, 1)))

    result = _run(catalog)

    assert _product(result, "prod_mentor")["activeOrTrialing"] == 1
    assert result["timeline"] == []


def test_archived_product_with_current_subscriber_is_kept(app, catalog):
    catalog.products["prod_old"] = {"id": "prod_old", "name": "Legacy", "active": False}
    catalog.prices["price_old"] = {"id": "price_old", "product": "prod_old", "unit_amount": 9900, "currency": "eur"}
    catalog.subscriptions.append(make_subscription("sub_old", customer=make_customer(), price="price_old"))

    result = _run(catalog)

    legacy = _product(result, "prod_old")
    assert legacy["isActive"] is False
    assert legacy["activeOrTrialing"] == 1


def test_products_sorted_by_current_activity(app, catalog):
    catalog.products["prod_group"] = {"id": "prod_group", "name": "Group calls", "active": True}
    catalog.prices["price_group"] = {"id": "price_group", "product": "prod_group", "unit_amount": 4900, "currency": "eur"}
    catalog.subscriptions += [
        make_subscription("sub_1", customer=make_customer("cus_1")),
        make_subscription("sub_2", customer=make_customer("cus_2"), price="price_group"),
        make_subscription("sub_3", customer=make_customer("cus_3"), price="price_group"),
    ]

    result = _run(catalog)

    assert [p["productId"] for p in result["products"]] == ["prod_group", "prod_mentor"]


def test_invoice_revenue_maps_through_subscription(app, catalog):
    catalog.subscriptions.append(make_subscription("sub_1", customer=make_customer()))
    catalog.invoices.append({
        "id": "in_1", "subscription": "sub_1", "created": ts(2026, 1, 20),
        "total": 15000, "total_excluding_tax": 12605,
    })

    result = _run(catalog)

    mentor = _product(result, "prod_mentor")
    assert mentor["periodGross"] == 150.0
    assert mentor["periodNet"] == 126.05
    assert result["timeline"][0]["points"][0]["gross"] == 150.0
    assert "list_invoice_lines" not in catalog.call_names()


def test_invoice_without_subscription_falls_back_to_line_items(app, catalog):
    catalog.invoices.append({"id": "in_2", "subscription": None, "created": ts(2026, 1, 5), "total": 11900, "tax": 1900})
    catalog.invoice_lines["in_2"] = [
        {"id": "il_0", "price": None, "amount": 0},
        {"id": "il_1", "price": {"id": "price_pro", "product": "prod_mentor"}, "amount": 11900},
    ]

    result = _run(catalog)

    mentor = _product(result, "prod_mentor")
    assert mentor["periodGross"] == 119.0
    assert mentor["periodNet"] == 100.0
    assert mentor["activeOrTrialing"] == 0
    assert ("list_invoice_lines", "in_2") in catalog.calls


def test_newer_invoice_shape_resolves_subscription_from_parent(app, catalog):
    catalog.subscriptions.append(make_subscription("sub_1", customer=make_customer()))
    catalog.invoices.append({
        "id": "in_3", "created": ts(2026, 1, 20), "total": 15000,
        "parent": {"subscription_details": {"subscription": "sub_1"}},
    })

    result = _run(catalog)

    assert _product(result, "prod_mentor")["periodGross"] == 150.0
    assert "list_invoice_lines" not in catalog.call_names()


def test_invoice_for_unlisted_subscription_is_skipped(app, catalog):
    catalog.subscriptions.append(make_subscription("sub_1", customer=make_customer()))
    catalog.invoices.append({"id": "in_4", "subscription": "sub_elsewhere", "created": ts(2026, 1, 20), "total": 15000})
    catalog.invoice_lines["in_4"] = [{"id": "il_1", "price": {"id": "price_pro", "product": "prod_mentor"}, "amount": 15000}]

    result = _run(catalog)

    assert _product(result, "prod_mentor")["periodGross"] == 0.0
    assert "list_invoice_lines" not in catalog.call_names()


def test_churn_and_cancellation_feeds(app, catalog):
    catalog.subscriptions += [
        make_subscription("sub_gone", customer=make_customer("cus_1"), status="canceled",
                          created=ts(2025, 5, 1), canceled_at=ts(2026, 1, 10), ended_at=ts(2026, 1, 10),
                          period_end=ts(2026, 1, 10)),
        make_subscription("sub_leaving", customer=make_customer("cus_2"), status="active",
                          created=ts(2025, 5, 1), cancel_at_period_end=True, canceled_at=ts(2026, 1, 20),
                          period_end=ts(2026, 2, 15)),
    ]

    result = _run(catalog)

    mentor = _product(result, "prod_mentor")
    assert mentor["churned"] == 1
    assert mentor["cancelScheduled"] == 1
    assert [(e["type"], e["subscriptionId"]) for e in result["recentEvents"]] == [
        ("cancel_scheduled", "sub_leaving"),
        ("churn", "sub_gone"),
    ]
    assert result["timeline"][0]["points"][0]["churns"] == 1
    [upcoming] = result["upcomingCancellations"]
    assert upcoming["subscriptionId"] == "sub_leaving"
    assert upcoming["at"] == "2026-02-15T00:00:00Z"


def test_usd_unspecified_is_treated_as_net_price(app, catalog):
    catalog.prices["price_pro"].update(currency="usd", tax_behavior="unspecified", unit_amount=10000)
    catalog.subscriptions.append(make_subscription(customer=make_customer(country="DE")))

    mentor = _product(_run(catalog), "prod_mentor")

    assert mentor["expectedMonthlyNet"] == 100.0
    assert mentor["expectedMonthlyGross"] == 119.0


def test_unknown_product_uses_raw_id_as_name(app, catalog):
    catalog.prices["price_ghost"] = {"id": "price_ghost", "product": "prod_ghost", "unit_amount": 1000, "currency": "eur"}
    catalog.subscriptions.append(make_subscription(customer=make_customer(), price="price_ghost"))

    result = _run(catalog)

    ghost = _product(result, "prod_ghost")
    assert ghost["productName"] == "prod_ghost"
    assert ghost["isActive"] is None


def test_catalog_lookups_are_memoized(app, catalog):
    catalog.subscriptions += [
        make_subscription(f"sub_{i}", customer=make_customer(f"cus_{i}")) for i in range(5)
    ]

    _run(catalog)

    assert catalog.call_names().count("retrieve_price") == 1
    assert catalog.call_names().count("retrieve_product") == 0
