import logging
from sqlalchemy import select, func
from sqlalchemy.orm import Session
from pydantic import ValidationError

from .config import settings
from .constants import Currency, PAYMENT_CURRENCIES, RATE_DIGITS, ShipmentStatus
from .costing import (
    MissingRmbRateError,
    balance_for,
    build_payment_snapshot,
    declared_total,
    resolve_component_costs,
)
from .currency import (
    InvalidRateError,
    UnsupportedCurrencyError,
    normalize_payment_amounts,
    parse_amount,
    round_amount,
)
from .errors import ApiError
from .models import (
    ExchangeRate,
    ProductType,
    Shipment,
    ShipmentCustomsDetails,
    ShipmentItem,
    ShipmentPayment,
    ShipmentShippingDetails,
    Supplier,
    User,
)
from . import schemas

logger = logging.getLogger(__name__)


def _apply(obj, data: dict) -> None:
    for k, v in data.items():
        setattr(obj, k, v)


# --- Users ---

def list_users(db: Session) -> list[User]:
    return db.execute(select(User).order_by(User.username)).scalars().all()


def get_user(db: Session, user_id: str) -> User | None:
    return db.get(User, user_id)


def create_user(db: Session, payload: schemas.UserCreate) -> User:
    exists = db.execute(select(User).where(User.username == payload.username)).scalars().first()
    if exists:
        raise ValueError("اسم المستخدم موجود بالفعل")
    user = User(**payload.model_dump())
    db.add(user)
    db.flush()
    return user


def update_user(db: Session, user: User, payload: schemas.UserUpdate) -> User:
    _apply(user, payload.model_dump(exclude_unset=True))
    db.flush()
    return user


# --- Suppliers ---

def list_suppliers(db: Session, active_only: bool = False) -> list[Supplier]:
    stmt = select(Supplier).order_by(Supplier.name)
    if active_only:
        stmt = stmt.where(Supplier.is_active.is_(True))
    return db.execute(stmt).scalars().all()


def get_supplier(db: Session, supplier_id: int) -> Supplier | None:
    return db.get(Supplier, supplier_id)


def create_supplier(db: Session, payload: schemas.SupplierCreate) -> Supplier:
    data = payload.model_dump(exclude_none=True)
    supplier = Supplier(**data)
    db.add(supplier)
    db.flush()
    return supplier


def update_supplier(db: Session, supplier: Supplier, payload: schemas.SupplierUpdate) -> Supplier:
    _apply(supplier, payload.model_dump(exclude_unset=True))
    db.flush()
    return supplier


def delete_supplier(db: Session, supplier: Supplier) -> None:
    used = db.execute(
        select(func.count(ShipmentItem.id)).where(ShipmentItem.supplier_id == supplier.id)
    ).scalar_one()
    if used:
        raise ValueError("لا يمكن حذف مورد مرتبط ببنود شحنات")
    db.delete(supplier)
    db.flush()


# --- Product types ---

def list_product_types(db: Session) -> list[ProductType]:
    return db.execute(select(ProductType).order_by(ProductType.name)).scalars().all()


def get_product_type(db: Session, product_type_id: int) -> ProductType | None:
    return db.get(ProductType, product_type_id)


def create_product_type(db: Session, payload: schemas.ProductTypeCreate) -> ProductType:
    exists = db.execute(select(ProductType).where(ProductType.name == payload.name)).scalars().first()
    if exists:
        raise ValueError("نوع المنتج موجود بالفعل")
    pt = ProductType(**payload.model_dump())
    db.add(pt)
    db.flush()
    return pt


def update_product_type(db: Session, pt: ProductType, payload: schemas.ProductTypeUpdate) -> ProductType:
    data = payload.model_dump(exclude_unset=True)
    if data.get("name") and data["name"] != pt.name:
        clash = db.execute(select(ProductType).where(ProductType.name == data["name"])).scalars().first()
        if clash:
            raise ValueError("نوع المنتج موجود بالفعل")
    _apply(pt, data)
    db.flush()
    return pt


def delete_product_type(db: Session, pt: ProductType) -> None:
    used = db.execute(
        select(func.count(ShipmentItem.id)).where(ShipmentItem.product_type_id == pt.id)
    ).scalar_one()
    if used:
        raise ValueError("لا يمكن حذف نوع منتج مستخدم في بنود شحنات")
    db.delete(pt)
    db.flush()


# --- Exchange rates ---

def list_exchange_rates(db: Session) -> list[ExchangeRate]:
    stmt = select(ExchangeRate).order_by(ExchangeRate.rate_date.desc(), ExchangeRate.id.desc())
    return db.execute(stmt).scalars().all()


def create_exchange_rate(db: Session, payload: schemas.ExchangeRateCreate) -> ExchangeRate:
    if payload.from_currency == payload.to_currency:
        raise ValueError("لا يمكن تسجيل سعر صرف لنفس العملة")
    rate = ExchangeRate(**payload.model_dump())
    db.add(rate)
    db.flush()
    return rate


def get_latest_rate(db: Session, from_currency: str, to_currency: str) -> ExchangeRate | None:
    stmt = (
        select(ExchangeRate)
        .where(ExchangeRate.from_currency == from_currency, ExchangeRate.to_currency == to_currency)
        .order_by(ExchangeRate.rate_date.desc(), ExchangeRate.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def latest_rate_value(db: Session, from_currency: str, to_currency: str) -> float | None:
    row = get_latest_rate(db, from_currency, to_currency)
    value = parse_amount(row.rate_value) if row else 0.0
    return value if value > 0 else None


def market_rmb_to_egp_rate(db: Session) -> float:
    """Latest RMB->EGP rate, or the configured default when none is stored."""
    rate = latest_rate_value(db, Currency.RMB, Currency.EGP)
    if rate is None:
        logger.warning("no RMB->EGP rate stored, using default %s", settings.DEFAULT_RMB_TO_EGP_RATE)
        return settings.DEFAULT_RMB_TO_EGP_RATE
    return rate


def market_usd_to_rmb_rate(db: Session) -> float:
    rate = latest_rate_value(db, Currency.USD, Currency.RMB)
    if rate is None:
        logger.warning("no USD->RMB rate stored, using default %s", settings.DEFAULT_USD_TO_RMB_RATE)
        return settings.DEFAULT_USD_TO_RMB_RATE
    return rate


# --- Shipments (reads) ---

def list_shipments(db: Session) -> list[Shipment]:
    stmt = select(Shipment).order_by(Shipment.created_at.desc(), Shipment.id.desc())
    return db.execute(stmt).scalars().all()


def get_shipment(db: Session, shipment_id: int) -> Shipment | None:
    return db.get(Shipment, shipment_id)


def get_shipments_by_ids(db: Session, ids) -> list[Shipment]:
    ids = list(ids)
    if not ids:
        return []
    return db.execute(select(Shipment).where(Shipment.id.in_(ids))).scalars().all()


def get_shipment_items(db: Session, shipment_id: int) -> list[ShipmentItem]:
    stmt = select(ShipmentItem).where(ShipmentItem.shipment_id == shipment_id).order_by(ShipmentItem.id)
    return db.execute(stmt).scalars().all()


def get_shipping_details(db: Session, shipment_id: int) -> ShipmentShippingDetails | None:
    stmt = select(ShipmentShippingDetails).where(ShipmentShippingDetails.shipment_id == shipment_id)
    return db.execute(stmt).scalars().first()


def get_customs_details(db: Session, shipment_id: int) -> ShipmentCustomsDetails | None:
    stmt = select(ShipmentCustomsDetails).where(ShipmentCustomsDetails.shipment_id == shipment_id)
    return db.execute(stmt).scalars().first()


# --- Payments ---

def list_payments(db: Session) -> list[ShipmentPayment]:
    stmt = select(ShipmentPayment).order_by(ShipmentPayment.payment_date.desc(), ShipmentPayment.id.desc())
    return db.execute(stmt).scalars().all()


def list_shipment_payments(db: Session, shipment_id: int) -> list[ShipmentPayment]:
    stmt = (
        select(ShipmentPayment)
        .where(ShipmentPayment.shipment_id == shipment_id)
        .order_by(ShipmentPayment.payment_date.desc(), ShipmentPayment.id.desc())
    )
    return db.execute(stmt).scalars().all()


def payments_with_shipments(db: Session) -> list[dict]:
    payments = list_payments(db)
    if not payments:
        return []
    shipments = {s.id: s for s in get_shipments_by_ids(db, {p.shipment_id for p in payments})}
    out = []
    for p in payments:
        row = schemas.PaymentOut.model_validate(p).model_dump()
        s = shipments.get(p.shipment_id)
        row["shipment"] = schemas.ShipmentOut.model_validate(s).model_dump() if s else None
        out.append(row)
    return out


def _paid_totals(db: Session, shipment_id: int):
    return db.execute(
        select(
            func.coalesce(func.sum(ShipmentPayment.amount_egp), 0),
            func.max(ShipmentPayment.payment_date),
        ).where(ShipmentPayment.shipment_id == shipment_id)
    ).one()


def _parse_payment(payload) -> schemas.PaymentCreate:
    if isinstance(payload, schemas.PaymentCreate):
        return payload
    try:
        return schemas.PaymentCreate.model_validate(payload)
    except ValidationError as e:
        bad_date = any("payment_date" in err.get("loc", ()) for err in e.errors())
        raise ApiError("PAYMENT_DATE_INVALID" if bad_date else "PAYMENT_PAYLOAD_INVALID", status=400)


def create_payment(
    db: Session,
    payload,
    actor_id: str | None = None,
    simulate_post_insert_error: bool = False,
) -> ShipmentPayment:
    """Record a payment and refresh the shipment's paid / balance / final totals.

    Everything happens in one transaction: on any failure, including one after
    the payment row was inserted, the session is rolled back and nothing of
    the payment or of the shipment update survives.
    """
    try:
        payment = _insert_payment(db, _parse_payment(payload), actor_id, simulate_post_insert_error)
        db.commit()
    except ApiError as e:
        db.rollback()
        logger.warning("payment rejected: %s %s", e.code, e.details)
        raise
    except Exception:
        db.rollback()
        logger.exception("payment insert rolled back")
        raise
    db.refresh(payment)
    return payment


def _insert_payment(
    db: Session,
    data: schemas.PaymentCreate,
    actor_id: str | None,
    simulate_post_insert_error: bool,
) -> ShipmentPayment:
    stmt = (
        select(Shipment)
        .where(Shipment.id == data.shipment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    shipment = db.execute(stmt).scalars().first()
    if not shipment:
        raise ApiError("SHIPMENT_NOT_FOUND", status=404, details={"shipment_id": data.shipment_id})

    if shipment.status == ShipmentStatus.ARCHIVED:
        raise ApiError("SHIPMENT_LOCKED", status=409, details={"shipment_id": shipment.id, "status": shipment.status})

    currency = (data.payment_currency or "").strip().upper()
    if currency not in PAYMENT_CURRENCIES:
        raise ApiError("PAYMENT_CURRENCY_UNSUPPORTED", details={"currency": data.payment_currency})

    amount_original = parse_amount(data.amount_original)
    if amount_original <= 0:
        raise ApiError("PAYMENT_PAYLOAD_INVALID", details={"amount_original": data.amount_original})

    latest_rate = latest_rate_value(db, Currency.RMB, Currency.EGP)
    rate = parse_amount(data.exchange_rate_to_egp) or None
    if currency == Currency.RMB and not rate:
        if latest_rate is None:
            raise ApiError("PAYMENT_RATE_MISSING", details={"shipment_id": shipment.id, "currency": currency})
        rate = latest_rate

    try:
        amount_egp, rate_to_egp = normalize_payment_amounts(currency, amount_original, rate)
    except InvalidRateError:
        raise ApiError("PAYMENT_RATE_MISSING", details={"shipment_id": shipment.id, "currency": currency})
    except UnsupportedCurrencyError:
        raise ApiError("PAYMENT_CURRENCY_UNSUPPORTED", details={"currency": currency})

    try:
        costs = resolve_component_costs(
            shipment,
            shipping_details=shipment.shipping_details,
            customs_details=shipment.customs_details,
            items=shipment.items,
            latest_rmb_to_egp_rate=latest_rate,
            payment_rmb_to_egp_rate=rate_to_egp,
            default_rmb_to_egp_rate=settings.DEFAULT_RMB_TO_EGP_RATE,
        )
    except MissingRmbRateError:
        raise ApiError("PAYMENT_RATE_MISSING", details={"shipment_id": shipment.id, "currency": currency})

    known_total = costs.total
    if known_total <= 0:
        raise ApiError("PAYMENT_TOTAL_MISSING", details={"shipment_id": shipment.id})

    paid_before, _ = _paid_totals(db, shipment.id)
    paid_before = round_amount(parse_amount(paid_before))
    remaining = balance_for(known_total, paid_before)
    if amount_egp > remaining + settings.PAYMENT_TOLERANCE_EGP:
        raise ApiError(
            "PAYMENT_OVERPAY",
            f"لا يمكن دفع هذا المبلغ - الحد المسموح به هو {remaining:.2f} جنيه",
            status=409,
            details={
                "shipment_id": shipment.id,
                "known_total": known_total,
                "already_paid": paid_before,
                "remaining_allowed": remaining,
                "attempted": amount_egp,
            },
        )

    # fill EGP components that were only known in RMB / from items
    for field, value in (
        ("purchase_cost_egp", costs.purchase_egp),
        ("commission_cost_egp", costs.commission_egp),
        ("shipping_cost_egp", costs.shipping_egp),
        ("customs_cost_egp", costs.customs_egp),
        ("takhreeg_cost_egp", costs.takhreeg_egp),
    ):
        if value > 0 and parse_amount(getattr(shipment, field)) == 0:
            setattr(shipment, field, value)

    payment = ShipmentPayment(
        shipment_id=shipment.id,
        payment_date=data.payment_date,
        payment_currency=currency,
        amount_original=round_amount(amount_original),
        exchange_rate_to_egp=round_amount(rate_to_egp, RATE_DIGITS) if rate_to_egp else None,
        amount_egp=round_amount(amount_egp),
        cost_component=data.cost_component,
        payment_method=data.payment_method,
        cash_receiver_name=data.cash_receiver_name,
        reference_number=data.reference_number,
        note=data.note,
        attachment_url=data.attachment_url,
        created_by_user_id=actor_id,
    )
    db.add(payment)
    db.flush()

    if simulate_post_insert_error:
        raise RuntimeError("Simulated failure after inserting payment")

    total_paid, last_date = _paid_totals(db, shipment.id)
    total_paid = round_amount(parse_amount(total_paid))
    shipment.total_paid_egp = total_paid
    shipment.final_total_cost_egp = known_total
    shipment.balance_egp = balance_for(known_total, total_paid)
    shipment.last_payment_date = last_date or data.payment_date
    db.flush()

    logger.info(
        "payment %s on shipment %s: %s %s -> %.2f EGP, balance %.2f",
        payment.id, shipment.shipment_code, amount_original, currency, amount_egp, shipment.balance_egp,
    )
    return payment


def get_payment_allowance(db: Session, shipment_id: int, shipment: Shipment | None = None) -> dict:
    """How much can still be paid on a shipment.

    The declared EGP components win; when they are all empty the total is
    recovered from items / shipping / customs details at the market rate.
    """
    shipment = shipment or get_shipment(db, shipment_id)
    if not shipment:
        raise ApiError("SHIPMENT_NOT_FOUND", status=404, details={"shipment_id": shipment_id})

    already_paid = round_amount(parse_amount(shipment.total_paid_egp))
    known_total = declared_total(shipment)
    recovered = False

    if known_total == 0:
        try:
            known_total = resolve_component_costs(
                shipment,
                shipping_details=shipment.shipping_details,
                customs_details=shipment.customs_details,
                items=shipment.items,
                latest_rmb_to_egp_rate=latest_rate_value(db, Currency.RMB, Currency.EGP),
                default_rmb_to_egp_rate=settings.DEFAULT_RMB_TO_EGP_RATE,
            ).total
        except MissingRmbRateError:
            logger.warning("cannot recover known total for shipment %s: no RMB rate", shipment.id)
            known_total = 0.0
        recovered = known_total > 0

    return {
        "known_total": known_total,
        "already_paid": already_paid,
        "remaining_allowed": balance_for(known_total, already_paid),
        "recovered_from_items": recovered,
    }


def get_invoice_summary(db: Session, shipment_id: int) -> dict:
    shipment = get_shipment(db, shipment_id)
    if not shipment:
        raise ApiError("SHIPMENT_NOT_FOUND", status=404, details={"shipment_id": shipment_id})

    payments = list_shipment_payments(db, shipment_id)
    allowance = get_payment_allowance(db, shipment_id, shipment=shipment)
    snap = build_payment_snapshot(allowance["known_total"], payments)

    paid_rmb = snap.paid_by_currency.get(Currency.RMB, {}).get("original", 0.0)
    paid_egp = snap.paid_by_currency.get(Currency.EGP, {}).get("original", 0.0)

    goods = parse_amount(shipment.purchase_cost_rmb)
    shipping = parse_amount(shipment.shipping_cost_rmb)
    commission = parse_amount(shipment.commission_cost_rmb)
    rmb_subtotal = round_amount(goods + shipping + commission)

    customs = parse_amount(shipment.customs_cost_egp)
    takhreeg = parse_amount(shipment.takhreeg_cost_egp)
    egp_subtotal = round_amount(customs + takhreeg)

    return {
        "shipment_id": shipment.id,
        "shipment_code": shipment.shipment_code,
        "shipment_name": shipment.shipment_name,
        "known_total_cost": snap.known_total,
        "total_paid_egp": snap.total_paid_egp,
        "remaining_allowed": snap.remaining_allowed,
        "paid_by_currency": snap.paid_by_currency,
        "rmb": {
            "goods_total": goods,
            "shipping_total": shipping,
            "commission_total": commission,
            "subtotal": rmb_subtotal,
            "paid": paid_rmb,
            "remaining": balance_for(rmb_subtotal, paid_rmb),
        },
        "egp": {
            "customs_total": customs,
            "takhreeg_total": takhreeg,
            "subtotal": egp_subtotal,
            "paid": paid_egp,
            "remaining": balance_for(egp_subtotal, paid_egp),
        },
        "payment_allowance": allowance,
    }
