from datetime import date

import pytest
from sqlalchemy import select, func

from shipledger import crud, shipments
from shipledger.constants import CostComponent, PaymentMethod, ShipmentStatus
from shipledger.errors import ApiError
from shipledger.models import ExchangeRate, ShipmentItem, ShipmentPayment


def item(supplier_id, cartons=10, **extra):
    data = {
        "supplier_id": supplier_id,
        "product_name": "ألعاب أطفال",
        "cartons_ctn": cartons,
        "pieces_per_carton_pcs": 12,
        "purchase_price_per_piece_pri_rmb": 2.5,
        "customs_cost_per_carton_egp": 20,
        "takhreeg_cost_per_carton_egp": 5,
    }
    data.update(extra)
    return data


def new_shipment(db, supplier, **extra):
    payload = {
        "shipment_code": "CN-2024-001",
        "shipment_name": "شحنة يناير",
        "purchase_date": "2024-01-10",
        "purchase_rmb_to_egp_rate": 7,
        "items": [item(supplier.id)],
    }
    payload.update(extra)
    return shipments.create_shipment(db, payload)


SHIPPING = {
    "rmb_to_egp_rate": 7,
    "usd_to_rmb_rate": 7.2,
    "commission_rate_percent": 5,
    "shipping_area_sqm": 10,
    "shipping_cost_per_sqm_usd_original": 20,
}


def test_create_aggregates_items(db, supplier):
    s = new_shipment(db, supplier)

    assert s.status == ShipmentStatus.NEW
    assert len(s.items) == 1
    it = s.items[0]
    assert it.total_pieces_cou == 120
    assert float(it.total_purchase_cost_rmb) == 300
    assert float(it.total_customs_cost_egp) == 200
    assert float(it.total_takhreeg_cost_egp) == 50

    assert float(s.purchase_cost_rmb) == 300
    assert float(s.purchase_cost_egp) == 2100
    assert float(s.commission_cost_egp) == 0
    assert float(s.shipping_cost_egp) == 0
    assert float(s.final_total_cost_egp) == 2350
    assert float(s.balance_egp) == 2350


def test_create_uses_latest_rate(db, supplier):
    db.add(ExchangeRate(rate_date=date(2024, 1, 1), from_currency="RMB", to_currency="EGP", rate_value=6.5))
    db.commit()

    s = new_shipment(db, supplier, purchase_rmb_to_egp_rate=None)
    assert float(s.purchase_rmb_to_egp_rate) == 6.5
    assert float(s.purchase_cost_egp) == 1950


def test_create_falls_back_to_default_rate(db, supplier):
    s = new_shipment(db, supplier, purchase_rmb_to_egp_rate=None)
    assert float(s.purchase_rmb_to_egp_rate) == 7.15
    assert float(s.purchase_cost_egp) == 2145


def test_duplicate_code(db, supplier):
    new_shipment(db, supplier)
    with pytest.raises(ApiError) as exc:
        new_shipment(db, supplier)
    assert exc.value.code == "SHIPMENT_PAYLOAD_INVALID"
    assert exc.value.status == 409


def test_unknown_supplier_in_items(db):
    payload = {
        "shipment_code": "X",
        "shipment_name": "X",
        "purchase_date": "2024-01-10",
        "items": [item(999)],
    }
    with pytest.raises(ApiError) as exc:
        shipments.create_shipment(db, payload)
    assert exc.value.code == "SHIPMENT_ITEMS_INVALID"
    assert exc.value.details == {"index": 0, "supplier_id": 999}
    assert crud.list_shipments(db) == []


def test_items_must_be_a_list(db):
    payload = {"shipment_code": "X", "shipment_name": "X", "purchase_date": "2024-01-10", "items": "nope"}
    with pytest.raises(ApiError) as exc:
        shipments.create_shipment(db, payload)
    assert exc.value.code == "SHIPMENT_ITEMS_INVALID"


def test_invalid_base_data(db):
    with pytest.raises(ApiError) as exc:
        shipments.create_shipment(db, {"shipment_name": "X", "purchase_date": "2024-01-10"})
    assert exc.value.code == "SHIPMENT_PAYLOAD_INVALID"


def test_lifecycle_steps(db, supplier):
    s = new_shipment(db, supplier)

    s = shipments.update_shipment(db, s.id, {"step": 2, "shipping_data": SHIPPING})
    assert s.status == ShipmentStatus.AWAITING_SHIPPING
    assert float(s.commission_cost_rmb) == 15
    assert float(s.commission_cost_egp) == 105
    assert float(s.shipping_cost_rmb) == 1440
    assert float(s.shipping_cost_egp) == 10080
    assert float(s.shipping_details.total_shipping_cost_usd_original) == 200
    assert float(s.final_total_cost_egp) == 12535

    s = shipments.update_shipment(db, s.id, {"step": 3, "customs_data": {"total_customs_cost_egp": 500}})
    assert s.status == ShipmentStatus.READY_FOR_PICKUP
    assert float(s.customs_cost_egp) == 500
    assert float(s.takhreeg_cost_egp) == 50
    assert float(s.final_total_cost_egp) == 12835

    s = shipments.update_shipment(db, s.id, {"step": 4})
    assert s.status == ShipmentStatus.DELIVERED


def test_step_two_without_shipping_keeps_status(db, supplier):
    s = new_shipment(db, supplier)
    s = shipments.update_shipment(db, s.id, {"step": 2})
    assert s.status == ShipmentStatus.NEW


def test_items_update_recomputes_commission(db, supplier):
    s = new_shipment(db, supplier)
    shipments.update_shipment(db, s.id, {"shipping_data": SHIPPING})

    s = shipments.update_shipment(
        db, s.id, {"shipment_data": {"purchase_rmb_to_egp_rate": 7}, "items": [item(supplier.id, cartons=20)]}
    )

    assert float(s.purchase_cost_rmb) == 600
    assert float(s.purchase_cost_egp) == 4200
    assert float(s.commission_cost_rmb) == 30
    assert float(s.commission_cost_egp) == 210
    assert float(s.shipping_cost_egp) == 10080
    assert float(s.customs_cost_egp) == 400
    assert float(s.final_total_cost_egp) == 14990
    count = db.execute(select(func.count(ShipmentItem.id)).where(ShipmentItem.shipment_id == s.id)).scalar_one()
    assert count == 1


def test_items_update_uses_latest_rate(db, supplier):
    db.add(ExchangeRate(rate_date=date(2024, 1, 1), from_currency="RMB", to_currency="EGP", rate_value=5))
    db.commit()
    s = new_shipment(db, supplier, purchase_rmb_to_egp_rate=None)
    assert float(s.purchase_cost_egp) == 1500

    db.add(ExchangeRate(rate_date=date(2024, 2, 1), from_currency="RMB", to_currency="EGP", rate_value=8))
    db.commit()
    s = shipments.update_shipment(db, s.id, {"items": [item(supplier.id)]})

    assert float(s.purchase_rmb_to_egp_rate) == 8
    assert float(s.purchase_cost_egp) == 2400
    assert float(s.final_total_cost_egp) == 2650


def test_items_update_reprices_stored_shipping_at_latest_rate(db, supplier):
    s = new_shipment(db, supplier)
    shipments.update_shipment(db, s.id, {"shipping_data": SHIPPING})

    db.add(ExchangeRate(rate_date=date(2024, 2, 1), from_currency="RMB", to_currency="EGP", rate_value=8))
    db.commit()
    s = shipments.update_shipment(db, s.id, {"items": [item(supplier.id)]})

    assert float(s.purchase_cost_egp) == 2400
    assert float(s.commission_cost_egp) == 120
    assert float(s.shipping_cost_rmb) == 1440
    assert float(s.shipping_cost_egp) == 11520
    assert float(s.shipping_details.rmb_to_egp_rate_at_shipping) == 8
    assert float(s.final_total_cost_egp) == 14290


def test_items_update_without_rates_uses_default(db, supplier):
    s = new_shipment(db, supplier)
    s = shipments.update_shipment(db, s.id, {"items": [item(supplier.id)]})
    assert float(s.purchase_rmb_to_egp_rate) == 7.15
    assert float(s.purchase_cost_egp) == 2145


def test_final_total_keeps_paid_amount(db, supplier):
    s = new_shipment(db, supplier)
    crud.create_payment(db, {
        "shipment_id": s.id,
        "payment_date": "2024-02-01",
        "payment_currency": "EGP",
        "amount_original": 350,
        "cost_component": CostComponent.CUSTOMS,
        "payment_method": PaymentMethod.BANK_TRANSFER,
    })

    s = shipments.update_shipment(db, s.id, {"customs_data": {"total_customs_cost_egp": 400}})
    assert float(s.final_total_cost_egp) == 2550
    assert float(s.total_paid_egp) == 350
    assert float(s.balance_egp) == 2200


def test_archive_and_unarchive(db, supplier):
    s = new_shipment(db, supplier)

    s = shipments.update_shipment(db, s.id, {"shipment_data": {"archived": True}, "step": 4})
    assert s.status == ShipmentStatus.ARCHIVED

    s = shipments.update_shipment(db, s.id, {"step": 3})
    assert s.status == ShipmentStatus.ARCHIVED

    s = shipments.update_shipment(db, s.id, {"shipment_data": {"archived": False}})
    assert s.status == ShipmentStatus.DELIVERED


def test_update_base_data(db, supplier):
    s = new_shipment(db, supplier)
    s = shipments.update_shipment(
        db, s.id, {"shipment_data": {"shipment_name": "شحنة فبراير", "purchase_rmb_to_egp_rate": 8}}
    )
    assert s.shipment_name == "شحنة فبراير"
    assert float(s.purchase_cost_egp) == 2400
    assert float(s.final_total_cost_egp) == 2650


def test_update_code_collision(db, supplier):
    new_shipment(db, supplier)
    other = new_shipment(db, supplier, shipment_code="CN-2024-002")
    with pytest.raises(ApiError) as exc:
        shipments.update_shipment(db, other.id, {"shipment_data": {"shipment_code": "CN-2024-001"}})
    assert exc.value.code == "SHIPMENT_PAYLOAD_INVALID"


def test_codes_are_stripped(db, supplier):
    new_shipment(db, supplier)
    with pytest.raises(ApiError) as exc:
        new_shipment(db, supplier, shipment_code=" CN-2024-001 ")
    assert exc.value.status == 409

    other = new_shipment(db, supplier, shipment_code=" CN-2024-002 ")
    assert other.shipment_code == "CN-2024-002"

    other = shipments.update_shipment(db, other.id, {"shipment_data": {"shipment_code": " CN-2024-009 "}})
    assert other.shipment_code == "CN-2024-009"

    with pytest.raises(ApiError) as exc:
        shipments.update_shipment(db, other.id, {"shipment_data": {"shipment_code": " CN-2024-001 "}})
    assert exc.value.status == 409
    assert exc.value.details == {"shipment_code": "CN-2024-001"}


def test_update_code_unique_constraint(db, supplier, monkeypatch):
    new_shipment(db, supplier)
    other = new_shipment(db, supplier, shipment_code="CN-2024-002")
    monkeypatch.setattr(shipments, "_code_taken", lambda *args, **kwargs: False)

    with pytest.raises(ApiError) as exc:
        shipments.update_shipment(db, other.id, {"shipment_data": {"shipment_code": "CN-2024-001"}})
    assert exc.value.code == "SHIPMENT_PAYLOAD_INVALID"
    assert exc.value.status == 409
    assert crud.get_shipment(db, other.id).shipment_code == "CN-2024-002"


def test_update_unknown_shipment(db):
    with pytest.raises(ApiError) as exc:
        shipments.update_shipment(db, 404, {"step": 1})
    assert exc.value.code == "SHIPMENT_NOT_FOUND"


def test_delete_removes_payments(db, supplier):
    s = new_shipment(db, supplier)
    crud.create_payment(db, {
        "shipment_id": s.id,
        "payment_date": "2024-02-01",
        "payment_currency": "EGP",
        "amount_original": 100,
        "cost_component": CostComponent.PURCHASE,
        "payment_method": PaymentMethod.CASH,
    })

    shipments.delete_shipment(db, s.id)

    assert crud.get_shipment(db, s.id) is None
    assert db.execute(select(func.count(ShipmentPayment.id))).scalar_one() == 0
