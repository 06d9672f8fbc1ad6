"""Shipment create / update service.

Both operations run in one transaction and keep the shipment's cost fields
consistent: purchase, customs and clearance are re-aggregated from the items,
commission and shipping from the shipping details, and
final_total_cost_egp is always the sum of the five EGP components.
"""
import logging
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, schemas
from .constants import DEFAULT_COUNTRY, RATE_DIGITS, ShipmentStatus
from .costing import balance_for, declared_total, item_totals, resolve_rmb_to_egp_rate
from .currency import parse_amount, round_amount
from .errors import ApiError
from .models import (
    Shipment,
    ShipmentCustomsDetails,
    ShipmentItem,
    ShipmentShippingDetails,
    Supplier,
    ProductType,
)

logger = logging.getLogger(__name__)

ITEMS_LIST_INVALID = "قائمة البنود غير صالحة"
ITEMS_INVALID = "بيانات البنود غير صالحة"
SHIPMENT_INVALID = "البيانات الأساسية للشحنة غير صالحة"
SHIPMENT_UPDATE_INVALID = "بيانات الشحنة غير صالحة"
SHIPMENT_MISSING = "الشحنة غير موجودة"
CODE_TAKEN = "رمز الشحنة مستخدم بالفعل"

STEP_STATUS = {
    1: ShipmentStatus.AWAITING_SHIPPING,
    3: ShipmentStatus.READY_FOR_PICKUP,
    4: ShipmentStatus.DELIVERED,
}


# --- payload parsing (dicts come from importers / scripts, models from the API) ---

def _parse_items(raw) -> list[schemas.ShipmentItemIn]:
    if not isinstance(raw, (list, tuple)):
        raise ApiError("SHIPMENT_ITEMS_INVALID", ITEMS_LIST_INVALID)
    out = []
    for idx, item in enumerate(raw):
        if isinstance(item, schemas.ShipmentItemIn):
            out.append(item)
            continue
        try:
            out.append(schemas.ShipmentItemIn.model_validate(item))
        except ValidationError:
            raise ApiError("SHIPMENT_ITEMS_INVALID", ITEMS_INVALID, details={"index": idx})
    return out


def _parse_create(payload) -> schemas.ShipmentCreate:
    if isinstance(payload, schemas.ShipmentCreate):
        return payload
    payload = dict(payload or {})
    items = _parse_items(payload.pop("items", []))
    try:
        parsed = schemas.ShipmentCreate.model_validate(payload)
    except ValidationError:
        raise ApiError("SHIPMENT_PAYLOAD_INVALID", SHIPMENT_INVALID)
    parsed.items = items
    return parsed


def _parse_update(payload) -> schemas.ShipmentUpdate:
    if isinstance(payload, schemas.ShipmentUpdate):
        return payload
    payload = dict(payload or {})
    items = payload.pop("items", None)
    parsed_items = _parse_items(items) if items is not None else None
    try:
        parsed = schemas.ShipmentUpdate.model_validate(payload)
    except ValidationError:
        raise ApiError("SHIPMENT_PAYLOAD_INVALID", SHIPMENT_UPDATE_INVALID)
    parsed.items = parsed_items
    return parsed


# --- helpers ---

def _build_item(db: Session, data: schemas.ShipmentItemIn, idx: int) -> ShipmentItem:
    if data.supplier_id is not None and db.get(Supplier, data.supplier_id) is None:
        raise ApiError("SHIPMENT_ITEMS_INVALID", ITEMS_INVALID, details={"index": idx, "supplier_id": data.supplier_id})
    if data.product_type_id is not None and db.get(ProductType, data.product_type_id) is None:
        raise ApiError(
            "SHIPMENT_ITEMS_INVALID", ITEMS_INVALID, details={"index": idx, "product_type_id": data.product_type_id}
        )

    cartons = data.cartons_ctn
    pieces = data.total_pieces_cou if data.total_pieces_cou is not None else cartons * data.pieces_per_carton_pcs
    purchase_rmb = (
        data.total_purchase_cost_rmb
        if data.total_purchase_cost_rmb is not None
        else pieces * data.purchase_price_per_piece_pri_rmb
    )
    return ShipmentItem(
        supplier_id=data.supplier_id,
        product_type_id=data.product_type_id,
        product_name=data.product_name.strip(),
        description=data.description,
        country_of_origin=data.country_of_origin or DEFAULT_COUNTRY,
        image_url=data.image_url,
        cartons_ctn=cartons,
        pieces_per_carton_pcs=data.pieces_per_carton_pcs,
        total_pieces_cou=pieces,
        purchase_price_per_piece_pri_rmb=data.purchase_price_per_piece_pri_rmb,
        total_purchase_cost_rmb=round_amount(purchase_rmb),
        customs_cost_per_carton_egp=data.customs_cost_per_carton_egp,
        total_customs_cost_egp=round_amount(cartons * data.customs_cost_per_carton_egp),
        takhreeg_cost_per_carton_egp=data.takhreeg_cost_per_carton_egp,
        total_takhreeg_cost_egp=round_amount(cartons * data.takhreeg_cost_per_carton_egp),
    )


def _code_taken(db: Session, code: str, exclude_id: int | None = None) -> bool:
    stmt = select(Shipment.id).where(Shipment.shipment_code == code)
    if exclude_id is not None:
        stmt = stmt.where(Shipment.id != exclude_id)
    return db.execute(stmt).first() is not None


def _purchase_rate(db: Session, shipment: Shipment, explicit: float | None = None) -> float:
    rate = resolve_rmb_to_egp_rate(explicit, shipment.purchase_rmb_to_egp_rate)
    return rate if rate is not None else crud.market_rmb_to_egp_rate(db)


def _apply_items(shipment: Shipment, items: list[ShipmentItem], rate: float) -> None:
    shipment.items = items
    totals = item_totals(items)
    shipment.purchase_cost_rmb = round_amount(totals.purchase_rmb)
    shipment.purchase_cost_egp = round_amount(totals.purchase_rmb * rate)
    shipment.purchase_rmb_to_egp_rate = round_amount(rate, RATE_DIGITS)
    shipment.customs_cost_egp = round_amount(totals.customs_egp)
    shipment.takhreeg_cost_egp = round_amount(totals.takhreeg_egp)


def _apply_shipping(
    shipment: Shipment,
    *,
    rmb_to_egp: float,
    usd_to_rmb: float,
    commission_rate_percent: float,
    shipping_area_sqm: float,
    shipping_cost_per_sqm_usd: float,
    shipping_date=None,
    source_of_rates: str | None = None,
) -> ShipmentShippingDetails:
    purchase_rmb = parse_amount(shipment.purchase_cost_rmb)

    commission_rmb = round_amount(purchase_rmb * commission_rate_percent / 100)
    commission_egp = round_amount(commission_rmb * rmb_to_egp)
    shipping_usd = round_amount(shipping_area_sqm * shipping_cost_per_sqm_usd)
    shipping_rmb = round_amount(shipping_usd * usd_to_rmb)
    shipping_egp = round_amount(shipping_rmb * rmb_to_egp)

    details = shipment.shipping_details
    if details is None:
        details = ShipmentShippingDetails()
        shipment.shipping_details = details

    details.total_purchase_cost_rmb = round_amount(purchase_rmb)
    details.commission_rate_percent = commission_rate_percent
    details.commission_value_rmb = commission_rmb
    details.commission_value_egp = commission_egp
    details.shipping_area_sqm = shipping_area_sqm
    details.shipping_cost_per_sqm_usd_original = shipping_cost_per_sqm_usd
    details.total_shipping_cost_usd_original = shipping_usd
    details.total_shipping_cost_rmb = shipping_rmb
    details.total_shipping_cost_egp = shipping_egp
    if shipping_date is not None:
        details.shipping_date = shipping_date
    details.rmb_to_egp_rate_at_shipping = round_amount(rmb_to_egp, RATE_DIGITS)
    details.usd_to_rmb_rate_at_shipping = round_amount(usd_to_rmb, RATE_DIGITS)
    if source_of_rates is not None:
        details.source_of_rates = source_of_rates
    details.rates_updated_at = datetime.utcnow()

    shipment.purchase_rmb_to_egp_rate = round_amount(rmb_to_egp, RATE_DIGITS)
    shipment.purchase_cost_egp = round_amount(purchase_rmb * rmb_to_egp)
    shipment.commission_cost_rmb = commission_rmb
    shipment.commission_cost_egp = commission_egp
    shipment.shipping_cost_rmb = shipping_rmb
    shipment.shipping_cost_egp = shipping_egp
    return details


def _reapply_stored_shipping(db: Session, shipment: Shipment, rmb_to_egp: float) -> None:
    """Recompute commission / shipping from the stored inputs after items changed."""
    d = shipment.shipping_details
    _apply_shipping(
        shipment,
        rmb_to_egp=rmb_to_egp,
        usd_to_rmb=parse_amount(d.usd_to_rmb_rate_at_shipping) or crud.market_usd_to_rmb_rate(db),
        commission_rate_percent=parse_amount(d.commission_rate_percent),
        shipping_area_sqm=parse_amount(d.shipping_area_sqm),
        shipping_cost_per_sqm_usd=parse_amount(d.shipping_cost_per_sqm_usd_original),
    )


def _apply_customs(shipment: Shipment, data: schemas.CustomsDataIn) -> None:
    totals = item_totals(shipment.items)
    customs = data.total_customs_cost_egp if data.total_customs_cost_egp is not None else totals.customs_egp
    takhreeg = data.total_takhreeg_cost_egp if data.total_takhreeg_cost_egp is not None else totals.takhreeg_egp

    details = shipment.customs_details
    if details is None:
        details = ShipmentCustomsDetails()
        shipment.customs_details = details
    details.total_customs_cost_egp = round_amount(customs)
    details.total_takhreeg_cost_egp = round_amount(takhreeg)
    if data.customs_invoice_date is not None:
        details.customs_invoice_date = data.customs_invoice_date
        shipment.invoice_customs_date = data.customs_invoice_date

    shipment.customs_cost_egp = round_amount(customs)
    shipment.takhreeg_cost_egp = round_amount(takhreeg)


def _refresh_totals(shipment: Shipment) -> None:
    shipment.final_total_cost_egp = declared_total(shipment)
    shipment.total_paid_egp = round_amount(parse_amount(shipment.total_paid_egp))
    shipment.balance_egp = balance_for(shipment.final_total_cost_egp, shipment.total_paid_egp)


# --- service ---

def create_shipment(db: Session, payload, user_id: str | None = None) -> Shipment:
    data = _parse_create(payload)
    code = data.shipment_code.strip()
    try:
        if _code_taken(db, code):
            raise ApiError("SHIPMENT_PAYLOAD_INVALID", CODE_TAKEN, status=409, details={"shipment_code": code})

        shipment = Shipment(
            shipment_code=code,
            shipment_name=data.shipment_name.strip(),
            purchase_date=data.purchase_date,
            invoice_customs_date=data.invoice_customs_date,
            status=ShipmentStatus.NEW,
            created_by_user_id=user_id,
            partial_discount_rmb=data.partial_discount_rmb,
            discount_notes=data.discount_notes,
            commission_cost_rmb=0,
            commission_cost_egp=0,
            shipping_cost_rmb=0,
            shipping_cost_egp=0,
            total_paid_egp=0,
        )
        items = [_build_item(db, it, idx) for idx, it in enumerate(data.items)]
        rate = _purchase_rate(db, shipment, data.purchase_rmb_to_egp_rate)
        _apply_items(shipment, items, rate)
        _refresh_totals(shipment)

        db.add(shipment)
        db.flush()
        db.commit()
    except ApiError:
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        raise ApiError("SHIPMENT_PAYLOAD_INVALID", CODE_TAKEN, status=409, details={"shipment_code": code})
    except Exception:
        db.rollback()
        logger.exception("create shipment %s rolled back", code)
        raise

    db.refresh(shipment)
    logger.info(
        "shipment %s created: %d items, final %.2f EGP",
        shipment.shipment_code, len(shipment.items), parse_amount(shipment.final_total_cost_egp),
    )
    return shipment


def update_shipment(db: Session, shipment_id: int, payload) -> Shipment:
    data = _parse_update(payload)
    code = None
    try:
        shipment = db.get(Shipment, shipment_id)
        if not shipment:
            raise ApiError("SHIPMENT_NOT_FOUND", SHIPMENT_MISSING, status=404, details={"shipment_id": shipment_id})
        old_status = shipment.status

        explicit_rate = None
        if data.shipment_data is not None:
            fields = data.shipment_data.model_dump(exclude_unset=True)
            archived = fields.pop("archived", None)
            if fields.get("shipment_code"):
                fields["shipment_code"] = fields["shipment_code"].strip()
            code = fields.get("shipment_code")
            if code and _code_taken(db, code, exclude_id=shipment.id):
                raise ApiError("SHIPMENT_PAYLOAD_INVALID", CODE_TAKEN, status=409, details={"shipment_code": code})
            explicit_rate = fields.pop("purchase_rmb_to_egp_rate", None)
            for k, v in fields.items():
                if v is not None or k in ("invoice_customs_date", "discount_notes"):
                    setattr(shipment, k, v)
            if explicit_rate:
                shipment.purchase_rmb_to_egp_rate = round_amount(explicit_rate, RATE_DIGITS)
                shipment.purchase_cost_egp = round_amount(parse_amount(shipment.purchase_cost_rmb) * explicit_rate)
            if archived is True:
                shipment.status = ShipmentStatus.ARCHIVED
            elif archived is False and shipment.status == ShipmentStatus.ARCHIVED:
                shipment.status = ShipmentStatus.DELIVERED

        if data.items is not None:
            items = [_build_item(db, it, idx) for idx, it in enumerate(data.items)]
            # latest market rate, not the rate stored at creation
            items_rate = explicit_rate or crud.market_rmb_to_egp_rate(db)
            _apply_items(shipment, items, items_rate)
            if data.shipping_data is None and shipment.shipping_details is not None:
                _reapply_stored_shipping(db, shipment, items_rate)

        if data.shipping_data is not None:
            sd = data.shipping_data
            _apply_shipping(
                shipment,
                rmb_to_egp=sd.rmb_to_egp_rate or _purchase_rate(db, shipment, explicit_rate),
                usd_to_rmb=sd.usd_to_rmb_rate or crud.market_usd_to_rmb_rate(db),
                commission_rate_percent=sd.commission_rate_percent,
                shipping_area_sqm=sd.shipping_area_sqm,
                shipping_cost_per_sqm_usd=sd.shipping_cost_per_sqm_usd_original,
                shipping_date=sd.shipping_date,
                source_of_rates=sd.source_of_rates,
            )

        if data.customs_data is not None:
            _apply_customs(shipment, data.customs_data)

        _refresh_totals(shipment)

        if shipment.status != ShipmentStatus.ARCHIVED:
            if data.step in STEP_STATUS:
                shipment.status = STEP_STATUS[data.step]
            elif data.step == 2 and data.shipping_data is not None:
                shipment.status = ShipmentStatus.AWAITING_SHIPPING

        db.flush()
        db.commit()
    except ApiError:
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        raise ApiError("SHIPMENT_PAYLOAD_INVALID", CODE_TAKEN, status=409, details={"shipment_code": code})
    except Exception:
        db.rollback()
        logger.exception("update shipment %s rolled back", shipment_id)
        raise

    db.refresh(shipment)
    if shipment.status != old_status:
        logger.info("shipment %s: %s -> %s", shipment.shipment_code, old_status, shipment.status)
    return shipment


def delete_shipment(db: Session, shipment_id: int) -> None:
    shipment = db.get(Shipment, shipment_id)
    if not shipment:
        raise ApiError("SHIPMENT_NOT_FOUND", SHIPMENT_MISSING, status=404, details={"shipment_id": shipment_id})
    code = shipment.shipment_code
    try:
        db.delete(shipment)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("delete shipment %s rolled back", shipment_id)
        raise
    logger.info("shipment %s deleted", code)
