import logging
from datetime import datetime, date

from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select, func
from sqlalchemy.orm import Session

from .config import settings
from .constants import UserRole, WRITE_ROLES
from .db import Base, engine, get_db, SessionLocal
from .deps import get_current_user, require_role
from .errors import register_exception_handlers
from . import models, schemas, crud, reports, shipments

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

can_write = require_role(*WRITE_ROLES)
managers_only = require_role(UserRole.MANAGER)


@app.get("/health")
def health():
    return {"status": "ok", "utc": datetime.utcnow().isoformat()}


@app.on_event("startup")
def startup():
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        ensure_bootstrap_manager(db)


def ensure_bootstrap_manager(db: Session):
    """Idempotent: an empty users table gets one manager so the API is usable."""
    if db.execute(select(func.count(models.User.id))).scalar_one():
        return None
    user = models.User(username="admin", first_name="Admin", role=UserRole.MANAGER)
    db.add(user)
    db.commit()
    logger.warning("created bootstrap manager 'admin' with id %s", user.id)
    return user


# --- Users ---

@app.get("/users", response_model=list[schemas.UserOut])
def list_users(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return crud.list_users(db)


@app.post("/users", response_model=schemas.UserOut)
def create_user(payload: schemas.UserCreate, db: Session = Depends(get_db), user: models.User = Depends(managers_only)):
    try:
        created = crud.create_user(db, payload)
        db.commit()
        db.refresh(created)
        return created
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@app.patch("/users/{user_id}", response_model=schemas.UserOut)
def update_user(
    user_id: str,
    payload: schemas.UserUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(managers_only),
):
    target = crud.get_user(db, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="المستخدم غير موجود")
    crud.update_user(db, target, payload)
    db.commit()
    db.refresh(target)
    return target


# --- Suppliers ---

@app.get("/suppliers", response_model=list[schemas.SupplierOut])
def list_suppliers(
    active_only: bool = False,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return crud.list_suppliers(db, active_only=active_only)


@app.get("/suppliers/{supplier_id}", response_model=schemas.SupplierOut)
def get_supplier(supplier_id: int, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    supplier = crud.get_supplier(db, supplier_id)
    if not supplier:
        raise HTTPException(status_code=404, detail="المورد غير موجود")
    return supplier


@app.post("/suppliers", response_model=schemas.SupplierOut)
def create_supplier(payload: schemas.SupplierCreate, db: Session = Depends(get_db), user: models.User = Depends(can_write)):
    supplier = crud.create_supplier(db, payload)
    db.commit()
    db.refresh(supplier)
    return supplier


@app.put("/suppliers/{supplier_id}", response_model=schemas.SupplierOut)
def update_supplier(
    supplier_id: int,
    payload: schemas.SupplierUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(can_write),
):
    supplier = crud.get_supplier(db, supplier_id)
    if not supplier:
        raise HTTPException(status_code=404, detail="المورد غير موجود")
    crud.update_supplier(db, supplier, payload)
    db.commit()
    db.refresh(supplier)
    return supplier


@app.delete("/suppliers/{supplier_id}")
def delete_supplier(supplier_id: int, db: Session = Depends(get_db), user: models.User = Depends(can_write)):
    supplier = crud.get_supplier(db, supplier_id)
    if not supplier:
        raise HTTPException(status_code=404, detail="المورد غير موجود")
    try:
        crud.delete_supplier(db, supplier)
        db.commit()
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True}


# --- Product types ---

@app.get("/product-types", response_model=list[schemas.ProductTypeOut])
def list_product_types(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return crud.list_product_types(db)


@app.post("/product-types", response_model=schemas.ProductTypeOut)
def create_product_type(
    payload: schemas.ProductTypeCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(can_write),
):
    try:
        pt = crud.create_product_type(db, payload)
        db.commit()
        db.refresh(pt)
        return pt
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@app.put("/product-types/{product_type_id}", response_model=schemas.ProductTypeOut)
def update_product_type(
    product_type_id: int,
    payload: schemas.ProductTypeUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(can_write),
):
    pt = crud.get_product_type(db, product_type_id)
    if not pt:
        raise HTTPException(status_code=404, detail="نوع المنتج غير موجود")
    try:
        crud.update_product_type(db, pt, payload)
        db.commit()
        db.refresh(pt)
        return pt
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@app.delete("/product-types/{product_type_id}")
def delete_product_type(product_type_id: int, db: Session = Depends(get_db), user: models.User = Depends(can_write)):
    pt = crud.get_product_type(db, product_type_id)
    if not pt:
        raise HTTPException(status_code=404, detail="نوع المنتج غير موجود")
    try:
        crud.delete_product_type(db, pt)
        db.commit()
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True}


# --- Exchange rates ---

@app.get("/exchange-rates", response_model=list[schemas.ExchangeRateOut])
def list_exchange_rates(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return crud.list_exchange_rates(db)


@app.get("/exchange-rates/latest", response_model=schemas.ExchangeRateOut)
def latest_exchange_rate(
    from_currency: str = Query(default="RMB"),
    to_currency: str = Query(default="EGP"),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    rate = crud.get_latest_rate(db, from_currency.upper(), to_currency.upper())
    if not rate:
        raise HTTPException(status_code=404, detail="لا يوجد سعر صرف مسجل")
    return rate


@app.post("/exchange-rates", response_model=schemas.ExchangeRateOut)
def create_exchange_rate(
    payload: schemas.ExchangeRateCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(can_write),
):
    try:
        rate = crud.create_exchange_rate(db, payload)
        db.commit()
        db.refresh(rate)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("rate %s->%s = %s on %s", rate.from_currency, rate.to_currency, rate.rate_value, rate.rate_date)
    return rate


# --- Shipments ---

def _shipment_or_404(db: Session, shipment_id: int) -> models.Shipment:
    shipment = crud.get_shipment(db, shipment_id)
    if not shipment:
        raise HTTPException(status_code=404, detail="الشحنة غير موجودة")
    return shipment


@app.get("/shipments", response_model=list[schemas.ShipmentOut])
def list_shipments(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return crud.list_shipments(db)


@app.get("/shipments/{shipment_id}", response_model=schemas.ShipmentDetailOut)
def get_shipment(shipment_id: int, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return _shipment_or_404(db, shipment_id)


@app.post("/shipments", response_model=schemas.ShipmentDetailOut)
def create_shipment(payload: schemas.ShipmentCreate, db: Session = Depends(get_db), user: models.User = Depends(can_write)):
    return shipments.create_shipment(db, payload, user_id=user.id)


@app.patch("/shipments/{shipment_id}", response_model=schemas.ShipmentDetailOut)
def update_shipment(
    shipment_id: int,
    payload: schemas.ShipmentUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(can_write),
):
    return shipments.update_shipment(db, shipment_id, payload)


@app.delete("/shipments/{shipment_id}")
def delete_shipment(shipment_id: int, db: Session = Depends(get_db), user: models.User = Depends(can_write)):
    shipments.delete_shipment(db, shipment_id)
    return {"ok": True}


@app.get("/shipments/{shipment_id}/items", response_model=list[schemas.ShipmentItemOut])
def shipment_items(shipment_id: int, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    _shipment_or_404(db, shipment_id)
    return crud.get_shipment_items(db, shipment_id)


@app.get("/shipments/{shipment_id}/shipping", response_model=schemas.ShippingDetailsOut | None)
def shipment_shipping(shipment_id: int, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    _shipment_or_404(db, shipment_id)
    return crud.get_shipping_details(db, shipment_id)


@app.get("/shipments/{shipment_id}/customs", response_model=schemas.CustomsDetailsOut | None)
def shipment_customs(shipment_id: int, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    _shipment_or_404(db, shipment_id)
    return crud.get_customs_details(db, shipment_id)


@app.get("/shipments/{shipment_id}/payments", response_model=list[schemas.PaymentOut])
def shipment_payments(shipment_id: int, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    _shipment_or_404(db, shipment_id)
    return crud.list_shipment_payments(db, shipment_id)


@app.get("/shipments/{shipment_id}/payment-allowance", response_model=schemas.PaymentAllowanceOut)
def payment_allowance(shipment_id: int, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return crud.get_payment_allowance(db, shipment_id)


@app.get("/shipments/{shipment_id}/invoice-summary", response_model=schemas.InvoiceSummaryOut)
def invoice_summary(shipment_id: int, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return crud.get_invoice_summary(db, shipment_id)


# --- Payments ---

@app.get("/payments", response_model=list[schemas.PaymentWithShipmentOut])
def list_payments(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return crud.payments_with_shipments(db)


@app.get("/payments/stats", response_model=schemas.PaymentStatsOut)
def payments_stats(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return reports.payment_stats(db)


@app.post("/payments", response_model=schemas.PaymentOut)
def create_payment(payload: schemas.PaymentCreate, db: Session = Depends(get_db), user: models.User = Depends(can_write)):
    return crud.create_payment(db, payload, actor_id=user.id)


# --- Dashboard / accounting ---

@app.get("/dashboard/stats", response_model=schemas.DashboardStatsOut)
def dashboard_stats(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return reports.dashboard_stats(db)


@app.get("/accounting/dashboard")
def accounting_dashboard(
    date_from: date | None = None,
    date_to: date | None = None,
    supplier_id: int | None = None,
    shipment_code: str | None = None,
    shipment_status: str | None = None,
    payment_status: str | None = None,
    include_archived: bool = False,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return reports.accounting_dashboard(
        db,
        date_from=date_from,
        date_to=date_to,
        supplier_id=supplier_id,
        shipment_code=shipment_code,
        shipment_status=shipment_status,
        payment_status=payment_status,
        include_archived=include_archived,
    )


@app.get("/accounting/supplier-balances", response_model=list[schemas.SupplierBalanceOut])
def supplier_balances(
    date_from: date | None = None,
    date_to: date | None = None,
    supplier_id: int | None = None,
    balance_type: str = Query(default="all", pattern="^(all|owing|credit|settled)$"),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return reports.supplier_balances(
        db, date_from=date_from, date_to=date_to, supplier_id=supplier_id, balance_type=balance_type
    )


@app.get("/accounting/supplier-statement/{supplier_id}")
def supplier_statement(
    supplier_id: int,
    date_from: date | None = None,
    date_to: date | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return reports.supplier_statement(db, supplier_id, date_from=date_from, date_to=date_to)


@app.get("/accounting/movement-report")
def movement_report(
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
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return reports.movement_report(
        db,
        date_from=date_from,
        date_to=date_to,
        shipment_id=shipment_id,
        supplier_id=supplier_id,
        movement_type=movement_type,
        cost_component=cost_component,
        payment_method=payment_method,
        shipment_status=shipment_status,
        payment_status=payment_status,
        include_archived=include_archived,
    )


@app.get("/accounting/payment-methods-report", response_model=list[schemas.PaymentMethodStatOut])
def payment_methods_report(
    date_from: date | None = None,
    date_to: date | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return reports.payment_methods_report(db, date_from=date_from, date_to=date_to)
