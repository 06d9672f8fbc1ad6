from enum import StrEnum


# ──────────────────────────── General ────────────────────────────
DEFAULT_COUNTRY = "الصين"
MONEY_DIGITS = 2
RATE_DIGITS = 4


# ──────────────────────────── Status Enums ────────────────────────────
class ShipmentStatus(StrEnum):
    NEW = "جديدة"
    AWAITING_SHIPPING = "في انتظار الشحن"
    READY_FOR_PICKUP = "جاهزة للاستلام"
    DELIVERED = "مستلمة بنجاح"
    ARCHIVED = "مؤرشفة"


class PaymentStatusFilter(StrEnum):
    UNPAID = "لم يتم دفع أي مبلغ"
    PARTIAL = "مدفوعة جزئياً"
    SETTLED = "مسددة بالكامل"


class BalanceStatus(StrEnum):
    OWING = "owing"
    SETTLED = "settled"
    CREDIT = "credit"


# ──────────────────────────── Users ────────────────────────────
class UserRole(StrEnum):
    MANAGER = "مدير"
    ACCOUNTANT = "محاسب"
    INVENTORY = "مسؤول مخزون"
    VIEWER = "مشاهد"


WRITE_ROLES = (UserRole.MANAGER, UserRole.ACCOUNTANT)


# ──────────────────────────── Money ────────────────────────────
class Currency(StrEnum):
    RMB = "RMB"
    EGP = "EGP"
    USD = "USD"


PAYMENT_CURRENCIES = (Currency.RMB, Currency.EGP)


class CostComponent(StrEnum):
    PURCHASE = "تكلفة البضاعة"
    SHIPPING = "الشحن"
    COMMISSION = "العمولة"
    CUSTOMS = "الجمرك"
    TAKHREEG = "التخريج"


class PaymentMethod(StrEnum):
    CASH = "نقدي"
    VODAFONE_CASH = "فودافون كاش"
    INSTAPAY = "إنستاباي"
    BANK_TRANSFER = "تحويل بنكي"
    OTHER = "أخرى"


# ──────────────────────────── Movement report ────────────────────────────
class MovementType(StrEnum):
    PURCHASE = "تكلفة بضاعة"
    SHIPPING = "تكلفة شحن"
    COMMISSION = "عمولة"
    CUSTOMS = "جمرك"
    TAKHREEG = "تخريج"
    PAYMENT = "دفعة"
