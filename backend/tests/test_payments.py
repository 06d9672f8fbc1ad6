from datetime import date

import pytest
from sqlalchemy import select, func

from shipledger import crud
from shipledger.config import settings
from shipledger.constants import CostComponent, PaymentMethod, ShipmentStatus
from shipledger.errors import ApiError
from shipledger.models import ExchangeRate, Shipment, ShipmentPayment


def payment(shipment_id, amount, currency="EGP", **extra):
    data = {
        "shipment_id": shipment_id,
        "payment_date": "2024-03-01",
        "payment_currency": currency,
        "amount_original": amount,
        "cost_component": CostComponent.PURCHASE,
        "payment_method": PaymentMethod.CASH,
    }
    data.update(extra)
    return data


@pytest.fixture
def rmb_shipment(make_shipment):
    return make_shipment(purchase_cost_rmb=100, purchase_rmb_to_egp_rate=10, customs_cost_egp=50)


def payment_count(db, shipment_id):
    return db.execute(
        select(func.count(ShipmentPayment.id)).where(ShipmentPayment.shipment_id == shipment_id)
    ).scalar_one()


def test_payment_updates_shipment_totals(db, rmb_shipment):
    p = crud.create_payment(db, payment(rmb_shipment.id, 100))

    s = db.get(Shipment, rmb_shipment.id)
    assert float(p.amount_egp) == 100
    assert p.exchange_rate_to_egp is None
    assert float(s.purchase_cost_egp) == 1000
    assert float(s.final_total_cost_egp) == 1050
    assert float(s.total_paid_egp) == 100
    assert float(s.balance_egp) == 950
    assert s.last_payment_date == date(2024, 3, 1)


def test_failure_after_insert_rolls_everything_back(db, rmb_shipment):
    with pytest.raises(RuntimeError):
        crud.create_payment(db, payment(rmb_shipment.id, 100), simulate_post_insert_error=True)

    db.expire_all()
    s = db.get(Shipment, rmb_shipment.id)
    assert payment_count(db, rmb_shipment.id) == 0
    assert float(s.total_paid_egp) == 0
    assert float(s.balance_egp) == 0
    assert float(s.final_total_cost_egp) == 0
    assert float(s.purchase_cost_egp) == 0


def test_rmb_payment_converted_with_given_rate(db, rmb_shipment):
    p = crud.create_payment(db, payment(rmb_shipment.id, 10, currency="rmb", exchange_rate_to_egp=7.5))
    assert p.payment_currency == "RMB"
    assert float(p.amount_egp) == 75
    assert float(p.exchange_rate_to_egp) == 7.5


def test_rmb_payment_falls_back_to_latest_rate(db, rmb_shipment):
    db.add(ExchangeRate(rate_date=date(2024, 2, 1), from_currency="RMB", to_currency="EGP", rate_value=6))
    db.add(ExchangeRate(rate_date=date(2024, 2, 20), from_currency="RMB", to_currency="EGP", rate_value=6.5))
    db.commit()

    p = crud.create_payment(db, payment(rmb_shipment.id, 10, currency="RMB"))
    assert float(p.amount_egp) == 65


def test_rmb_payment_without_any_rate(db, rmb_shipment):
    with pytest.raises(ApiError) as exc:
        crud.create_payment(db, payment(rmb_shipment.id, 10, currency="RMB"))
    assert exc.value.code == "PAYMENT_RATE_MISSING"
    assert payment_count(db, rmb_shipment.id) == 0


def test_egp_payment_needs_rate_for_rmb_costs(db, make_shipment, monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_RMB_TO_EGP_RATE", 0)
    s = make_shipment(purchase_cost_rmb=100)

    with pytest.raises(ApiError) as exc:
        crud.create_payment(db, payment(s.id, 10))
    assert exc.value.code == "PAYMENT_RATE_MISSING"
    assert exc.value.details == {"shipment_id": s.id, "currency": "EGP"}
    assert payment_count(db, s.id) == 0


def test_overpay_is_rejected(db, rmb_shipment):
    crud.create_payment(db, payment(rmb_shipment.id, 1000))

    with pytest.raises(ApiError) as exc:
        crud.create_payment(db, payment(rmb_shipment.id, 50.01))

    err = exc.value
    assert err.code == "PAYMENT_OVERPAY"
    assert err.status == 409
    assert "50.00" in err.message
    assert err.details["remaining_allowed"] == 50
    assert err.details["already_paid"] == 1000
    assert payment_count(db, rmb_shipment.id) == 1


def test_paying_exact_remainder_settles(db, rmb_shipment):
    crud.create_payment(db, payment(rmb_shipment.id, 1000))
    crud.create_payment(db, payment(rmb_shipment.id, 50, payment_date="2024-03-05"))

    s = db.get(Shipment, rmb_shipment.id)
    assert float(s.balance_egp) == 0
    assert s.last_payment_date == date(2024, 3, 5)


def test_last_payment_date_is_latest_not_last_inserted(db, rmb_shipment):
    crud.create_payment(db, payment(rmb_shipment.id, 10, payment_date="2024-04-01"))
    crud.create_payment(db, payment(rmb_shipment.id, 10, payment_date="2024-02-01"))

    assert db.get(Shipment, rmb_shipment.id).last_payment_date == date(2024, 4, 1)


def test_archived_shipment_is_locked(db, make_shipment):
    s = make_shipment(status=ShipmentStatus.ARCHIVED, customs_cost_egp=100)
    with pytest.raises(ApiError) as exc:
        crud.create_payment(db, payment(s.id, 10))
    assert exc.value.code == "SHIPMENT_LOCKED"
    assert exc.value.status == 409


def test_unknown_shipment(db):
    with pytest.raises(ApiError) as exc:
        crud.create_payment(db, payment(404, 10))
    assert exc.value.code == "SHIPMENT_NOT_FOUND"
    assert exc.value.status == 404


def test_unsupported_currency(db, rmb_shipment):
    with pytest.raises(ApiError) as exc:
        crud.create_payment(db, payment(rmb_shipment.id, 10, currency="USD"))
    assert exc.value.code == "PAYMENT_CURRENCY_UNSUPPORTED"


def test_shipment_without_costs_cannot_be_paid(db, make_shipment):
    s = make_shipment()
    with pytest.raises(ApiError) as exc:
        crud.create_payment(db, payment(s.id, 10))
    assert exc.value.code == "PAYMENT_TOTAL_MISSING"


def test_bad_payment_date(db, rmb_shipment):
    with pytest.raises(ApiError) as exc:
        crud.create_payment(db, payment(rmb_shipment.id, 10, payment_date="01/03/2024"))
    assert exc.value.code == "PAYMENT_DATE_INVALID"


def test_bad_payload(db, rmb_shipment):
    data = payment(rmb_shipment.id, 10)
    del data["cost_component"]
    with pytest.raises(ApiError) as exc:
        crud.create_payment(db, data)
    assert exc.value.code == "PAYMENT_PAYLOAD_INVALID"


def test_actor_is_recorded(db, rmb_shipment, accountant):
    p = crud.create_payment(db, payment(rmb_shipment.id, 10), actor_id=accountant.id)
    assert p.created_by_user_id == accountant.id


def test_allowance_recovers_total_from_items(db, make_shipment):
    s = make_shipment(purchase_cost_rmb=100, purchase_rmb_to_egp_rate=8)
    allowance = crud.get_payment_allowance(db, s.id)
    assert allowance == {
        "known_total": 800,
        "already_paid": 0,
        "remaining_allowed": 800,
        "recovered_from_items": True,
    }


def test_allowance_uses_declared_components(db, make_shipment):
    s = make_shipment(purchase_cost_egp=500, customs_cost_egp=100, total_paid_egp=200)
    allowance = crud.get_payment_allowance(db, s.id)
    assert allowance["known_total"] == 600
    assert allowance["remaining_allowed"] == 400
    assert allowance["recovered_from_items"] is False


def test_invoice_summary_splits_currencies(db, rmb_shipment):
    crud.create_payment(db, payment(rmb_shipment.id, 20, currency="RMB", exchange_rate_to_egp=10))
    crud.create_payment(
        db, payment(rmb_shipment.id, 30, cost_component=CostComponent.CUSTOMS, payment_method=PaymentMethod.INSTAPAY)
    )

    summary = crud.get_invoice_summary(db, rmb_shipment.id)
    assert summary["known_total_cost"] == 1050
    assert summary["total_paid_egp"] == 230
    assert summary["remaining_allowed"] == 820
    assert summary["paid_by_currency"]["RMB"] == {"original": 20, "converted_to_egp": 200}
    assert summary["rmb"]["goods_total"] == 100
    assert summary["rmb"]["remaining"] == 80
    assert summary["egp"]["subtotal"] == 50
    assert summary["egp"]["remaining"] == 20


def test_allowance_without_any_rate(db, make_shipment, monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_RMB_TO_EGP_RATE", 0)
    s = make_shipment(purchase_cost_rmb=100)
    allowance = crud.get_payment_allowance(db, s.id)
    assert allowance == {
        "known_total": 0,
        "already_paid": 0,
        "remaining_allowed": 0,
        "recovered_from_items": False,
    }
