from datetime import datetime, date
import uuid
from sqlalchemy import String, Integer, Numeric, Boolean, Date, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db import Base
from .constants import DEFAULT_COUNTRY, ShipmentStatus, UserRole


def _uuid_str() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    username: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role: Mapped[str] = mapped_column(String(30), default=UserRole.VIEWER)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def display_name(self) -> str:
        return self.first_name or self.username


class Supplier(Base):
    __tablename__ = "suppliers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str] = mapped_column(String(100), default=DEFAULT_COUNTRY)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ProductType(Base):
    __tablename__ = "product_types"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Shipment(Base):
    __tablename__ = "shipments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shipment_code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    shipment_name: Mapped[str] = mapped_column(String(200))
    purchase_date: Mapped[date] = mapped_column(Date, index=True)
    status: Mapped[str] = mapped_column(String(50), default=ShipmentStatus.NEW, index=True)
    invoice_customs_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_by_user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    # purchase
    purchase_cost_rmb: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    purchase_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    purchase_rmb_to_egp_rate: Mapped[float] = mapped_column(Numeric(10, 4), default=0)
    # commission / shipping
    commission_cost_rmb: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    commission_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    shipping_cost_rmb: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    shipping_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    # customs / clearance (EGP only)
    customs_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    takhreeg_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)

    final_total_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    total_paid_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    balance_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)

    partial_discount_rmb: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    discount_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("ShipmentItem", back_populates="shipment", cascade="all, delete-orphan", order_by="ShipmentItem.id")
    shipping_details = relationship("ShipmentShippingDetails", back_populates="shipment", uselist=False, cascade="all, delete-orphan")
    customs_details = relationship("ShipmentCustomsDetails", back_populates="shipment", uselist=False, cascade="all, delete-orphan")
    payments = relationship("ShipmentPayment", back_populates="shipment", cascade="all, delete-orphan")


class ShipmentItem(Base):
    __tablename__ = "shipment_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shipment_id: Mapped[int] = mapped_column(ForeignKey("shipments.id", ondelete="CASCADE"), index=True)
    supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id"), nullable=True, index=True)
    product_type_id: Mapped[int | None] = mapped_column(ForeignKey("product_types.id"), nullable=True)
    product_name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    country_of_origin: Mapped[str] = mapped_column(String(100), default=DEFAULT_COUNTRY)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    cartons_ctn: Mapped[int] = mapped_column(Integer, default=0)
    pieces_per_carton_pcs: Mapped[int] = mapped_column(Integer, default=0)
    total_pieces_cou: Mapped[int] = mapped_column(Integer, default=0)
    purchase_price_per_piece_pri_rmb: Mapped[float] = mapped_column(Numeric(15, 4), default=0)
    total_purchase_cost_rmb: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    customs_cost_per_carton_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    total_customs_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    takhreeg_cost_per_carton_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    total_takhreeg_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shipment = relationship("Shipment", back_populates="items")
    supplier = relationship("Supplier")
    product_type = relationship("ProductType")


class ShipmentShippingDetails(Base):
    __tablename__ = "shipment_shipping_details"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shipment_id: Mapped[int] = mapped_column(ForeignKey("shipments.id", ondelete="CASCADE"), unique=True)
    total_purchase_cost_rmb: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    commission_rate_percent: Mapped[float] = mapped_column(Numeric(5, 2), default=0)
    commission_value_rmb: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    commission_value_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    shipping_area_sqm: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    shipping_cost_per_sqm_usd_original: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    total_shipping_cost_usd_original: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    total_shipping_cost_rmb: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    total_shipping_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    shipping_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    rmb_to_egp_rate_at_shipping: Mapped[float | None] = mapped_column(Numeric(10, 4), nullable=True)
    usd_to_rmb_rate_at_shipping: Mapped[float | None] = mapped_column(Numeric(10, 4), nullable=True)
    source_of_rates: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rates_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shipment = relationship("Shipment", back_populates="shipping_details")


class ShipmentCustomsDetails(Base):
    __tablename__ = "shipment_customs_details"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shipment_id: Mapped[int] = mapped_column(ForeignKey("shipments.id", ondelete="CASCADE"), unique=True)
    total_customs_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    total_takhreeg_cost_egp: Mapped[float] = mapped_column(Numeric(15, 2), default=0)
    customs_invoice_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shipment = relationship("Shipment", back_populates="customs_details")


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rate_date: Mapped[date] = mapped_column(Date, index=True)
    from_currency: Mapped[str] = mapped_column(String(10))  # RMB/USD
    to_currency: Mapped[str] = mapped_column(String(10))  # EGP/RMB
    rate_value: Mapped[float] = mapped_column(Numeric(15, 6))
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_exchange_rates_pair_date", "from_currency", "to_currency", "rate_date"),
    )


class ShipmentPayment(Base):
    __tablename__ = "shipment_payments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shipment_id: Mapped[int] = mapped_column(ForeignKey("shipments.id", ondelete="CASCADE"), index=True)
    payment_date: Mapped[date] = mapped_column(Date, index=True)
    payment_currency: Mapped[str] = mapped_column(String(10))  # RMB/EGP
    amount_original: Mapped[float] = mapped_column(Numeric(15, 2))
    exchange_rate_to_egp: Mapped[float | None] = mapped_column(Numeric(10, 4), nullable=True)
    amount_egp: Mapped[float] = mapped_column(Numeric(15, 2))
    cost_component: Mapped[str] = mapped_column(String(50))
    payment_method: Mapped[str] = mapped_column(String(50))
    cash_receiver_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    attachment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shipment = relationship("Shipment", back_populates="payments")
