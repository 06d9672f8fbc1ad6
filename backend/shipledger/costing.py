"""Shipment cost aggregation and the "known total" of a shipment.

The known total is the part of a shipment's final cost that can already be
computed from what has been entered: EGP amounts are taken as-is, RMB amounts
are converted with the first usable RMB->EGP rate, and item / shipping-detail /
customs-detail rows fill in components the shipment row does not carry yet.
"""
from dataclasses import dataclass, field
from typing import Iterable

from .currency import parse_amount, round_amount


class MissingRmbRateError(Exception):
    """An RMB-denominated cost exists but no RMB->EGP rate can be resolved."""

    def __init__(self, message: str = "RMB_RATE_MISSING"):
        super().__init__(message)


@dataclass
class ItemTotals:
    purchase_rmb: float = 0.0
    customs_egp: float = 0.0
    takhreeg_egp: float = 0.0
    cartons: int = 0
    pieces: int = 0


@dataclass
class ComponentCosts:
    purchase_egp: float = 0.0
    commission_egp: float = 0.0
    shipping_egp: float = 0.0
    customs_egp: float = 0.0
    takhreeg_egp: float = 0.0
    rate: float | None = None

    @property
    def total(self) -> float:
        return round_amount(
            self.purchase_egp + self.commission_egp + self.shipping_egp + self.customs_egp + self.takhreeg_egp
        )


@dataclass
class PaymentSnapshot:
    known_total: float
    total_paid_egp: float
    remaining_allowed: float
    paid_by_currency: dict[str, dict[str, float]] = field(default_factory=dict)


def _item_component(item, total_attr: str, per_carton_attr: str) -> float:
    total = parse_amount(getattr(item, total_attr, None))
    if total > 0:
        return total
    return parse_amount(getattr(item, "cartons_ctn", None)) * parse_amount(getattr(item, per_carton_attr, None))


def item_totals(items: Iterable) -> ItemTotals:
    out = ItemTotals()
    for it in items or []:
        out.purchase_rmb += parse_amount(getattr(it, "total_purchase_cost_rmb", None))
        out.customs_egp += _item_component(it, "total_customs_cost_egp", "customs_cost_per_carton_egp")
        out.takhreeg_egp += _item_component(it, "total_takhreeg_cost_egp", "takhreeg_cost_per_carton_egp")
        out.cartons += int(parse_amount(getattr(it, "cartons_ctn", None)))
        out.pieces += int(parse_amount(getattr(it, "total_pieces_cou", None)))
    return out


def resolve_rmb_to_egp_rate(*candidates) -> float | None:
    """First positive rate in the given order, else None."""
    for c in candidates:
        rate = parse_amount(c)
        if rate > 0:
            return rate
    return None


def resolve_component_costs(
    shipment,
    shipping_details=None,
    customs_details=None,
    items: Iterable = (),
    latest_rmb_to_egp_rate: float | None = None,
    payment_rmb_to_egp_rate: float | None = None,
    default_rmb_to_egp_rate: float | None = None,
) -> ComponentCosts:
    """Per-component EGP costs for a shipment.

    Rate preference: shipment's own purchase rate, then the rate supplied with
    a payment, then the latest market rate, then the configured default.
    Raises MissingRmbRateError when an RMB amount has to be converted and none
    of them is usable.
    """
    rate = resolve_rmb_to_egp_rate(
        getattr(shipment, "purchase_rmb_to_egp_rate", None),
        payment_rmb_to_egp_rate,
        latest_rmb_to_egp_rate,
        default_rmb_to_egp_rate,
    )

    def pick(egp_candidates, rmb_candidates=()) -> float:
        for v in egp_candidates:
            if v > 0:
                return v
        for v in rmb_candidates:
            if v > 0:
                if rate is None:
                    raise MissingRmbRateError()
                return v * rate
        return 0.0

    def attr(obj, name):
        return parse_amount(getattr(obj, name, None)) if obj is not None else 0.0

    s, sd, cd = shipment, shipping_details, customs_details
    it = item_totals(items)

    purchase = pick(
        [attr(s, "purchase_cost_egp")],
        [attr(s, "purchase_cost_rmb"), attr(sd, "total_purchase_cost_rmb"), it.purchase_rmb],
    )
    commission = pick(
        [attr(s, "commission_cost_egp"), attr(sd, "commission_value_egp")],
        [attr(s, "commission_cost_rmb"), attr(sd, "commission_value_rmb")],
    )
    shipping = pick(
        [attr(s, "shipping_cost_egp"), attr(sd, "total_shipping_cost_egp")],
        [attr(s, "shipping_cost_rmb"), attr(sd, "total_shipping_cost_rmb")],
    )
    customs = pick([attr(s, "customs_cost_egp"), attr(cd, "total_customs_cost_egp"), it.customs_egp])
    takhreeg = pick([attr(s, "takhreeg_cost_egp"), attr(cd, "total_takhreeg_cost_egp"), it.takhreeg_egp])

    return ComponentCosts(
        purchase_egp=round_amount(purchase),
        commission_egp=round_amount(commission),
        shipping_egp=round_amount(shipping),
        customs_egp=round_amount(customs),
        takhreeg_egp=round_amount(takhreeg),
        rate=rate,
    )


def compute_shipment_known_total(
    shipment,
    shipping_details=None,
    customs_details=None,
    items: Iterable = (),
    latest_rmb_to_egp_rate: float | None = None,
    payment_rmb_to_egp_rate: float | None = None,
    default_rmb_to_egp_rate: float | None = None,
) -> float:
    return resolve_component_costs(
        shipment,
        shipping_details=shipping_details,
        customs_details=customs_details,
        items=items,
        latest_rmb_to_egp_rate=latest_rmb_to_egp_rate,
        payment_rmb_to_egp_rate=payment_rmb_to_egp_rate,
        default_rmb_to_egp_rate=default_rmb_to_egp_rate,
    ).total


def declared_total(shipment) -> float:
    """Sum of the EGP component fields stored on the shipment row."""
    return round_amount(
        parse_amount(shipment.purchase_cost_egp)
        + parse_amount(shipment.commission_cost_egp)
        + parse_amount(shipment.shipping_cost_egp)
        + parse_amount(shipment.customs_cost_egp)
        + parse_amount(shipment.takhreeg_cost_egp)
    )


def balance_for(final_total: float, paid: float) -> float:
    return round_amount(max(0.0, parse_amount(final_total) - parse_amount(paid)))


def build_payment_snapshot(known_total: float, payments: Iterable) -> PaymentSnapshot:
    by_currency: dict[str, dict[str, float]] = {}
    paid = 0.0
    for p in payments or []:
        bucket = by_currency.setdefault(p.payment_currency, {"original": 0.0, "converted_to_egp": 0.0})
        bucket["original"] += parse_amount(p.amount_original)
        bucket["converted_to_egp"] += parse_amount(p.amount_egp)
        paid += parse_amount(p.amount_egp)

    paid = round_amount(paid)
    return PaymentSnapshot(
        known_total=round_amount(known_total),
        total_paid_egp=paid,
        remaining_allowed=balance_for(known_total, paid),
        paid_by_currency={
            cur: {k: round_amount(v) for k, v in vals.items()} for cur, vals in by_currency.items()
        },
    )
