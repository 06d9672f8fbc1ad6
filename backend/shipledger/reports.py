"""Accounting reports: dashboards, supplier balances and statements, movements."""
from datetime import date

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from .config import settings
from .constants import (
    BalanceStatus,
    CostComponent,
    Currency,
    MovementType,
    PaymentMethod,
    PaymentStatusFilter,
    ShipmentStatus,
)
from .currency import parse_amount, round_amount
from .errors import ApiError
from .models import Shipment, ShipmentItem, ShipmentPayment, Supplier, User


def _eps() -> float:
    return settings.PAYMENT_TOLERANCE_EGP


def _remaining(s: Shipment) -> float:
    return max(0.0, parse_amount(s.final_total_cost_egp) - parse_amount(s.total_paid_egp))


def _sum(values) -> float:
    return round_amount(sum(values, 0.0))


def _supplier_shipment_ids(supplier_id: int):
    return select(ShipmentItem.shipment_id).where(ShipmentItem.supplier_id == supplier_id)


def _shipments(
    db: Session,
    date_from: date | None = None,
    date_to: date | None = None,
    supplier_id: int | None = None,
    shipment_code: str | None = None,
    shipment_status: str | None = None,
    shipment_id: int | None = None,
    include_archived: bool = False,
) -> list[Shipment]:
    stmt = select(Shipment)
    if shipment_status and shipment_status != "all":
        stmt = stmt.where(Shipment.status == shipment_status)
    if not include_archived and shipment_status != ShipmentStatus.ARCHIVED:
        stmt = stmt.where(Shipment.status != ShipmentStatus.ARCHIVED)
    if shipment_code:
        stmt = stmt.where(func.lower(Shipment.shipment_code).contains(shipment_code.strip().lower()))
    if date_from:
        stmt = stmt.where(Shipment.purchase_date >= date_from)
    if date_to:
        stmt = stmt.where(Shipment.purchase_date <= date_to)
    if shipment_id:
        stmt = stmt.where(Shipment.id == shipment_id)
    if supplier_id:
        stmt = stmt.where(Shipment.id.in_(_supplier_shipment_ids(supplier_id)))
    stmt = stmt.order_by(Shipment.created_at.desc(), Shipment.id.desc())
    return db.execute(stmt).scalars().all()


def matches_payment_status(s: Shipment, payment_status: str | None) -> bool:
    if not payment_status or payment_status == "all":
        return True
    paid = parse_amount(s.total_paid_egp)
    balance = _remaining(s)
    if payment_status == PaymentStatusFilter.UNPAID:
        return paid <= _eps()
    if payment_status == PaymentStatusFilter.SETTLED:
        return balance <= _eps()
    if payment_status == PaymentStatusFilter.PARTIAL:
        return paid > _eps() and balance > _eps()
    return True


def _payments_for(db: Session, shipment_ids, date_from=None, date_to=None) -> list[ShipmentPayment]:
    ids = list(shipment_ids)
    if not ids:
        return []
    stmt = select(ShipmentPayment).where(ShipmentPayment.shipment_id.in_(ids))
    if date_from:
        stmt = stmt.where(ShipmentPayment.payment_date >= date_from)
    if date_to:
        stmt = stmt.where(ShipmentPayment.payment_date <= date_to)
    stmt = stmt.order_by(ShipmentPayment.payment_date, ShipmentPayment.id)
    return db.execute(stmt).scalars().all()


def dashboard_stats(db: Session) -> dict:
    shipments = _shipments(db, include_archived=True)
    completed = [s for s in shipments if s.status == ShipmentStatus.DELIVERED]
    return {
        "total_shipments": len(shipments),
        "total_cost_egp": _sum(parse_amount(s.final_total_cost_egp) for s in shipments),
        "total_paid_egp": _sum(parse_amount(s.total_paid_egp) for s in shipments),
        "total_balance_egp": _sum(_remaining(s) for s in shipments),
        "pending_shipments": len(shipments) - len(completed),
        "completed_shipments": len(completed),
        "recent_shipments": shipments[:5],
    }


def payment_stats(db: Session) -> dict:
    unsettled = [s for s in _shipments(db, include_archived=True) if _remaining(s) > _eps()]
    last_payment = db.execute(
        select(ShipmentPayment).order_by(ShipmentPayment.payment_date.desc(), ShipmentPayment.id.desc()).limit(1)
    ).scalars().first()
    return {
        "total_cost_egp": _sum(parse_amount(s.final_total_cost_egp) for s in unsettled),
        "total_paid_egp": _sum(parse_amount(s.total_paid_egp) for s in unsettled),
        "total_balance_egp": _sum(_remaining(s) for s in unsettled),
        "last_payment": last_payment,
    }


def accounting_dashboard(
    db: Session,
    date_from: date | None = None,
    date_to: date | None = None,
    supplier_id: int | None = None,
    shipment_code: str | None = None,
    shipment_status: str | None = None,
    payment_status: str | None = None,
    include_archived: bool = False,
) -> dict:
    shipments = [
        s for s in _shipments(
            db,
            date_from=date_from,
            date_to=date_to,
            supplier_id=supplier_id,
            shipment_code=shipment_code,
            shipment_status=shipment_status,
            include_archived=include_archived,
        )
        if matches_payment_status(s, payment_status)
    ]
    ids = [s.id for s in shipments]
    payments = _payments_for(db, ids)

    def col(name):
        return _sum(parse_amount(getattr(s, name)) for s in shipments)

    purchase_rmb, purchase_egp = col("purchase_cost_rmb"), col("purchase_cost_egp")
    shipping_rmb, shipping_egp = col("shipping_cost_rmb"), col("shipping_cost_egp")
    commission_rmb, commission_egp = col("commission_cost_rmb"), col("commission_cost_egp")
    customs_egp, takhreeg_egp = col("customs_cost_egp"), col("takhreeg_cost_egp")
    discount_rmb = col("partial_discount_rmb")

    def paid(component=None, rmb_only=False):
        rows = [p for p in payments if component is None or p.cost_component == component]
        if rmb_only:
            return _sum(parse_amount(p.amount_original) for p in rows if p.payment_currency == Currency.RMB)
        return _sum(parse_amount(p.amount_egp) for p in rows)

    total_cost_rmb = round_amount(purchase_rmb + shipping_rmb + commission_rmb - discount_rmb)
    total_paid_rmb = paid(rmb_only=True)

    out = {
        "total_purchase_rmb": purchase_rmb,
        "total_purchase_egp": purchase_egp,
        "total_discount_rmb": discount_rmb,
        "total_shipping_rmb": shipping_rmb,
        "total_shipping_egp": shipping_egp,
        "total_commission_rmb": commission_rmb,
        "total_commission_egp": commission_egp,
        "total_customs_egp": customs_egp,
        "total_takhreeg_egp": takhreeg_egp,
        "total_cost_egp": col("final_total_cost_egp"),
        "total_cost_rmb": total_cost_rmb,
        "total_paid_egp": paid(),
        "total_paid_rmb": total_paid_rmb,
        "total_balance_egp": _sum(_remaining(s) for s in shipments),
        "total_balance_rmb": round_amount(max(0.0, total_cost_rmb - total_paid_rmb)),
        "total_cartons": sum(it.cartons_ctn or 0 for s in shipments for it in s.items),
        "total_pieces": sum(it.total_pieces_cou or 0 for s in shipments for it in s.items),
        "unsettled_shipments_count": sum(1 for s in shipments if _remaining(s) > _eps()),
        "shipments_count": len(shipments),
    }

    for key, component, cost_rmb, cost_egp in (
        ("purchase", CostComponent.PURCHASE, purchase_rmb, purchase_egp),
        ("shipping", CostComponent.SHIPPING, shipping_rmb, shipping_egp),
        ("commission", CostComponent.COMMISSION, commission_rmb, commission_egp),
        ("customs", CostComponent.CUSTOMS, None, customs_egp),
        ("takhreeg", CostComponent.TAKHREEG, None, takhreeg_egp),
    ):
        paid_egp = paid(component)
        out[f"total_paid_{key}_egp"] = paid_egp
        out[f"total_balance_{key}_egp"] = round_amount(max(0.0, cost_egp - paid_egp))
        if cost_rmb is not None:
            paid_rmb = paid(component, rmb_only=True)
            out[f"total_paid_{key}_rmb"] = paid_rmb
            out[f"total_balance_{key}_rmb"] = round_amount(max(0.0, cost_rmb - paid_rmb))
    return out


def _balance_status(balance: float) -> str:
    if balance > _eps():
        return BalanceStatus.OWING
    if balance < -_eps():
        return BalanceStatus.CREDIT
    return BalanceStatus.SETTLED


def supplier_balances(
    db: Session,
    date_from: date | None = None,
    date_to: date | None = None,
    supplier_id: int | None = None,
    balance_type: str | None = None,
) -> list[dict]:
    """Cost of every shipment carrying a supplier's items against what was paid on them.

    A shipment with items from several suppliers counts fully for each one.
    """
    stmt = select(Supplier).order_by(Supplier.name)
    if supplier_id:
        stmt = stmt.where(Supplier.id == supplier_id)

    result = []
    for supplier in db.execute(stmt).scalars().all():
        shipments = _shipments(db, date_from=date_from, date_to=date_to, supplier_id=supplier.id, include_archived=True)
        payments = _payments_for(db, [s.id for s in shipments])

        cost = _sum(parse_amount(s.final_total_cost_egp) for s in shipments)
        paid = _sum(parse_amount(p.amount_egp) for p in payments)
        balance = round_amount(cost - paid)
        status = _balance_status(balance)

        if balance_type and balance_type != "all" and status != balance_type:
            continue

        result.append({
            "supplier_id": supplier.id,
            "supplier_name": supplier.name,
            "total_cost_egp": cost,
            "total_paid_egp": paid,
            "balance_egp": balance,
            "balance_status": status,
        })
    return result


def supplier_statement(
    db: Session,
    supplier_id: int,
    date_from: date | None = None,
    date_to: date | None = None,
) -> dict:
    supplier = db.get(Supplier, supplier_id)
    if not supplier:
        raise ApiError("SUPPLIER_NOT_FOUND", status=404, details={"supplier_id": supplier_id})

    shipments = _shipments(db, date_from=date_from, date_to=date_to, supplier_id=supplier_id, include_archived=True)
    # payments are filtered by their own date, not by the shipment's purchase date
    all_ids = db.execute(_supplier_shipment_ids(supplier_id)).scalars().all()
    payments = _payments_for(db, set(all_ids), date_from=date_from, date_to=date_to)
    codes = {s.id: s.shipment_code for s in db.execute(select(Shipment).where(Shipment.id.in_(all_ids))).scalars()}

    movements = []
    for s in sorted(shipments, key=lambda x: (x.purchase_date, x.id)):
        movements.append({
            "date": s.purchase_date,
            "type": "shipment",
            "description": f"شحنة: {s.shipment_name}",
            "shipment_code": s.shipment_code,
            "cost_egp": round_amount(parse_amount(s.final_total_cost_egp)),
            "paid_egp": 0.0,
        })
    for p in payments:
        movements.append({
            "date": p.payment_date,
            "type": "payment",
            "description": f"دفعة - {p.cost_component}",
            "shipment_code": codes.get(p.shipment_id),
            "cost_egp": 0.0,
            "paid_egp": round_amount(parse_amount(p.amount_egp)),
        })

    # stable: on the same day the shipment cost comes before its payments
    movements.sort(key=lambda m: m["date"])
    running = 0.0
    for m in movements:
        running = round_amount(running + m["cost_egp"] - m["paid_egp"])
        m["running_balance"] = running

    return {
        "supplier": {"id": supplier.id, "name": supplier.name, "country": supplier.country},
        "movements": movements,
        "closing_balance": running,
    }


def movement_report(
    db: Session,
    date_from: date | None = None,
    date_to: date | None = None,
    shipment_id: int | None = None,
    supplier_id: int | None = None,
    movement_type: str | None = None,
    cost_component: str | None = None,
    payment_method: str | None = None,
    shipment_status: str | None = None,
    payment_status: str | None = None,
    include_archived: bool = False,
) -> dict:
    shipments = [
        s for s in _shipments(
            db,
            date_from=date_from,
            date_to=date_to,
            supplier_id=supplier_id,
            shipment_status=shipment_status,
            shipment_id=shipment_id,
            include_archived=include_archived,
        )
        if matches_payment_status(s, payment_status)
    ]
    by_id = {s.id: s for s in shipments}
    supplier_names = {sp.id: sp.name for sp in db.execute(select(Supplier)).scalars()}
    user_names = {u.id: u.display_name for u in db.execute(select(User)).scalars()}

    def first_supplier(s: Shipment):
        sid = next((it.supplier_id for it in s.items if it.supplier_id), None)
        return sid, supplier_names.get(sid) if sid else None

    want_all = not movement_type or movement_type == "all"
    movements = []

    for s in shipments:
        sid, sname = first_supplier(s)
        for mtype, rmb, egp in (
            (MovementType.PURCHASE, s.purchase_cost_rmb, s.purchase_cost_egp),
            (MovementType.SHIPPING, s.shipping_cost_rmb, s.shipping_cost_egp),
            (MovementType.COMMISSION, s.commission_cost_rmb, s.commission_cost_egp),
            (MovementType.CUSTOMS, None, s.customs_cost_egp),
            (MovementType.TAKHREEG, None, s.takhreeg_cost_egp),
        ):
            egp_amount = parse_amount(egp)
            if egp_amount <= 0:
                continue
            if not want_all and movement_type != mtype:
                continue
            rmb_amount = parse_amount(rmb)
            movements.append({
                "date": s.purchase_date,
                "shipment_code": s.shipment_code,
                "shipment_name": s.shipment_name,
                "supplier_id": sid,
                "supplier_name": sname,
                "movement_type": mtype,
                "cost_component": None,
                "payment_method": None,
                "original_currency": Currency.RMB if rmb_amount > 0 else Currency.EGP,
                "amount_original": round_amount(rmb_amount if rmb_amount > 0 else egp_amount),
                "amount_egp": round_amount(egp_amount),
                "direction": "cost",
                "user_name": None,
            })

    if want_all or movement_type == MovementType.PAYMENT:
        payments = _payments_for(db, by_id.keys(), date_from=date_from, date_to=date_to)
        for p in payments:
            if cost_component and p.cost_component != cost_component:
                continue
            if payment_method and p.payment_method != payment_method:
                continue
            s = by_id[p.shipment_id]
            sid, sname = first_supplier(s)
            movements.append({
                "date": p.payment_date,
                "shipment_code": s.shipment_code,
                "shipment_name": s.shipment_name,
                "supplier_id": sid,
                "supplier_name": sname,
                "movement_type": MovementType.PAYMENT,
                "cost_component": p.cost_component,
                "payment_method": p.payment_method,
                "original_currency": p.payment_currency,
                "amount_original": round_amount(parse_amount(p.amount_original)),
                "amount_egp": round_amount(parse_amount(p.amount_egp)),
                "direction": "payment",
                "user_name": user_names.get(p.created_by_user_id) if p.created_by_user_id else None,
            })

    movements.sort(key=lambda m: m["date"])
    total_cost = _sum(m["amount_egp"] for m in movements if m["direction"] == "cost")
    total_paid = _sum(m["amount_egp"] for m in movements if m["direction"] == "payment")
    return {
        "movements": movements,
        "total_cost_egp": total_cost,
        "total_paid_egp": total_paid,
        "net_movement": round_amount(total_cost - total_paid),
    }


def payment_methods_report(db: Session, date_from: date | None = None, date_to: date | None = None) -> list[dict]:
    method = func.coalesce(ShipmentPayment.payment_method, PaymentMethod.OTHER.value)
    stmt = select(
        method.label("payment_method"),
        func.count(ShipmentPayment.id),
        func.coalesce(func.sum(ShipmentPayment.amount_egp), 0),
    )
    if date_from:
        stmt = stmt.where(ShipmentPayment.payment_date >= date_from)
    if date_to:
        stmt = stmt.where(ShipmentPayment.payment_date <= date_to)
    stmt = stmt.group_by(method)

    rows = [
        {"payment_method": m, "payment_count": int(n), "total_amount_egp": round_amount(parse_amount(total))}
        for m, n, total in db.execute(stmt).all()
    ]
    rows.sort(key=lambda r: r["total_amount_egp"], reverse=True)
    return rows
