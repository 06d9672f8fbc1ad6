from datetime import date, datetime
from pydantic import BaseModel, Field
from typing import Optional, List, Dict

from .constants import CostComponent, PaymentMethod, UserRole


# --- Users ---

class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: UserRole = UserRole.VIEWER


class UserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[UserRole] = None


class UserOut(BaseModel):
    id: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str

    class Config:
        from_attributes = True


# --- Suppliers / product types ---

class SupplierCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True


class SupplierUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None


class SupplierOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    country: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ProductTypeCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    is_active: bool = True


class ProductTypeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class ProductTypeOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


# --- Exchange rates ---

class ExchangeRateCreate(BaseModel):
    rate_date: date
    from_currency: str = Field(pattern="^(RMB|USD|EGP)$")
    to_currency: str = Field(pattern="^(RMB|USD|EGP)$")
    rate_value: float = Field(gt=0)
    source: Optional[str] = None


class ExchangeRateOut(BaseModel):
    id: int
    rate_date: date
    from_currency: str
    to_currency: str
    rate_value: float
    source: Optional[str] = None

    class Config:
        from_attributes = True


# --- Shipments (INPUT) ---

class ShipmentItemIn(BaseModel):
    supplier_id: Optional[int] = None
    product_type_id: Optional[int] = None
    product_name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    country_of_origin: Optional[str] = None
    image_url: Optional[str] = None
    cartons_ctn: int = Field(default=0, ge=0)
    pieces_per_carton_pcs: int = Field(default=0, ge=0)
    # computed from cartons x pieces per carton when omitted
    total_pieces_cou: Optional[int] = Field(default=None, ge=0)
    purchase_price_per_piece_pri_rmb: float = Field(default=0, ge=0)
    # computed from pieces x price when omitted
    total_purchase_cost_rmb: Optional[float] = Field(default=None, ge=0)
    customs_cost_per_carton_egp: float = Field(default=0, ge=0)
    takhreeg_cost_per_carton_egp: float = Field(default=0, ge=0)


class ShipmentCreate(BaseModel):
    shipment_code: str = Field(min_length=1, max_length=50)
    shipment_name: str = Field(min_length=1, max_length=200)
    purchase_date: date
    invoice_customs_date: Optional[date] = None
    # optional explicit purchase rate; latest RMB->EGP rate otherwise
    purchase_rmb_to_egp_rate: Optional[float] = Field(default=None, gt=0)
    partial_discount_rmb: float = Field(default=0, ge=0)
    discount_notes: Optional[str] = None
    items: List[ShipmentItemIn] = Field(default_factory=list)


class ShipmentDataUpdate(BaseModel):
    shipment_code: Optional[str] = Field(default=None, min_length=1, max_length=50)
    shipment_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    purchase_date: Optional[date] = None
    invoice_customs_date: Optional[date] = None
    purchase_rmb_to_egp_rate: Optional[float] = Field(default=None, gt=0)
    partial_discount_rmb: Optional[float] = Field(default=None, ge=0)
    discount_notes: Optional[str] = None
    archived: Optional[bool] = None


class ShippingDataIn(BaseModel):
    rmb_to_egp_rate: Optional[float] = Field(default=None, gt=0)
    usd_to_rmb_rate: Optional[float] = Field(default=None, gt=0)
    commission_rate_percent: float = Field(default=0, ge=0, le=100)
    shipping_area_sqm: float = Field(default=0, ge=0)
    shipping_cost_per_sqm_usd_original: float = Field(default=0, ge=0)
    shipping_date: Optional[date] = None
    source_of_rates: Optional[str] = None


class CustomsDataIn(BaseModel):
    # per-item per-carton totals are used when omitted
    total_customs_cost_egp: Optional[float] = Field(default=None, ge=0)
    total_takhreeg_cost_egp: Optional[float] = Field(default=None, ge=0)
    customs_invoice_date: Optional[date] = None


class ShipmentUpdate(BaseModel):
    step: Optional[int] = Field(default=None, ge=1, le=4)
    shipment_data: Optional[ShipmentDataUpdate] = None
    items: Optional[List[ShipmentItemIn]] = None
    shipping_data: Optional[ShippingDataIn] = None
    customs_data: Optional[CustomsDataIn] = None


# --- Shipments (OUTPUT) ---

class ShipmentItemOut(BaseModel):
    id: int
    shipment_id: int
    supplier_id: Optional[int] = None
    product_type_id: Optional[int] = None
    product_name: str
    description: Optional[str] = None
    country_of_origin: str
    image_url: Optional[str] = None
    cartons_ctn: int
    pieces_per_carton_pcs: int
    total_pieces_cou: int
    purchase_price_per_piece_pri_rmb: float
    total_purchase_cost_rmb: float
    customs_cost_per_carton_egp: float
    total_customs_cost_egp: float
    takhreeg_cost_per_carton_egp: float
    total_takhreeg_cost_egp: float

    class Config:
        from_attributes = True


class ShippingDetailsOut(BaseModel):
    id: int
    shipment_id: int
    total_purchase_cost_rmb: float
    commission_rate_percent: float
    commission_value_rmb: float
    commission_value_egp: float
    shipping_area_sqm: float
    shipping_cost_per_sqm_usd_original: float
    total_shipping_cost_usd_original: float
    total_shipping_cost_rmb: float
    total_shipping_cost_egp: float
    shipping_date: Optional[date] = None
    rmb_to_egp_rate_at_shipping: Optional[float] = None
    usd_to_rmb_rate_at_shipping: Optional[float] = None
    source_of_rates: Optional[str] = None
    rates_updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CustomsDetailsOut(BaseModel):
    id: int
    shipment_id: int
    total_customs_cost_egp: float
    total_takhreeg_cost_egp: float
    customs_invoice_date: Optional[date] = None

    class Config:
        from_attributes = True


class ShipmentOut(BaseModel):
    id: int
    shipment_code: str
    shipment_name: str
    purchase_date: date
    status: str
    invoice_customs_date: Optional[date] = None
    created_by_user_id: Optional[str] = None
    purchase_cost_rmb: float
    purchase_cost_egp: float
    purchase_rmb_to_egp_rate: float
    commission_cost_rmb: float
    commission_cost_egp: float
    shipping_cost_rmb: float
    shipping_cost_egp: float
    customs_cost_egp: float
    takhreeg_cost_egp: float
    final_total_cost_egp: float
    total_paid_egp: float
    balance_egp: float
    partial_discount_rmb: float
    discount_notes: Optional[str] = None
    last_payment_date: Optional[date] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ShipmentDetailOut(ShipmentOut):
    items: List[ShipmentItemOut] = Field(default_factory=list)
    shipping_details: Optional[ShippingDetailsOut] = None
    customs_details: Optional[CustomsDetailsOut] = None


# --- Payments ---

class PaymentCreate(BaseModel):
    shipment_id: int
    payment_date: date
    # RMB/EGP, checked in crud.create_payment
    payment_currency: str
    amount_original: float = Field(gt=0)
    exchange_rate_to_egp: Optional[float] = Field(default=None, gt=0)
    cost_component: CostComponent
    payment_method: PaymentMethod
    cash_receiver_name: Optional[str] = None
    reference_number: Optional[str] = None
    note: Optional[str] = None
    attachment_url: Optional[str] = None


class PaymentOut(BaseModel):
    id: int
    shipment_id: int
    payment_date: date
    payment_currency: str
    amount_original: float
    exchange_rate_to_egp: Optional[float] = None
    amount_egp: float
    cost_component: str
    payment_method: str
    cash_receiver_name: Optional[str] = None
    reference_number: Optional[str] = None
    note: Optional[str] = None
    attachment_url: Optional[str] = None
    created_by_user_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentWithShipmentOut(PaymentOut):
    shipment: Optional[ShipmentOut] = None


class PaymentAllowanceOut(BaseModel):
    known_total: float
    already_paid: float
    remaining_allowed: float
    recovered_from_items: bool


class CurrencyPaidOut(BaseModel):
    original: float
    converted_to_egp: float


class InvoiceRmbPartOut(BaseModel):
    goods_total: float
    shipping_total: float
    commission_total: float
    subtotal: float
    paid: float
    remaining: float


class InvoiceEgpPartOut(BaseModel):
    customs_total: float
    takhreeg_total: float
    subtotal: float
    paid: float
    remaining: float


class InvoiceSummaryOut(BaseModel):
    shipment_id: int
    shipment_code: str
    shipment_name: str
    known_total_cost: float
    total_paid_egp: float
    remaining_allowed: float
    paid_by_currency: Dict[str, CurrencyPaidOut] = Field(default_factory=dict)
    rmb: InvoiceRmbPartOut
    egp: InvoiceEgpPartOut
    payment_allowance: PaymentAllowanceOut


# --- Reports ---

class DashboardStatsOut(BaseModel):
    total_shipments: int
    total_cost_egp: float
    total_paid_egp: float
    total_balance_egp: float
    pending_shipments: int
    completed_shipments: int
    recent_shipments: List[ShipmentOut] = Field(default_factory=list)


class PaymentStatsOut(BaseModel):
    total_cost_egp: float
    total_paid_egp: float
    total_balance_egp: float
    last_payment: Optional[PaymentOut] = None


class SupplierBalanceOut(BaseModel):
    supplier_id: int
    supplier_name: str
    total_cost_egp: float
    total_paid_egp: float
    balance_egp: float
    balance_status: str


class PaymentMethodStatOut(BaseModel):
    payment_method: str
    payment_count: int
    total_amount_egp: float
