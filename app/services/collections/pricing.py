from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models.billing import (
    AdjustmentKind,
    AdjustmentValueType,
    BillingAdjustment,
    BillingSubscription,
)
from app.services.collections.fx import ResolvedFxRate
from app.services.common import round_money

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PricingSnapshot:
    plan_key: str
    base_amount_usd: Decimal
    addons_total_usd: Decimal
    adjustment_discounts_usd: Decimal
    pre_discount_net_usd: Decimal
    discount_pct: Decimal
    discount_amount_usd: Decimal
    net_amount_usd: Decimal
    vat_rate: Decimal
    vat_amount_usd: Decimal
    total_usd: Decimal
    fx_type: str
    fx_rate_date: date
    fx_rate_ars_per_usd: Decimal
    total_ars: Decimal
    adjustments: list[dict] = field(default_factory=list)

    @property
    def adjustments_total_usd(self) -> Decimal:
        """Net effect of VAT and discounts on top of the pre-discount net."""
        return round_money(self.vat_amount_usd - self.discount_amount_usd)

    def as_json(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, date):
                data[key] = value.isoformat()
            elif isinstance(value, Decimal):
                data[key] = str(value)
        return data


def active_adjustments(db: Session, tenant_id, on_date: date) -> list[BillingAdjustment]:
    return (
        db.query(BillingAdjustment)
        .filter(BillingAdjustment.tenant_id == tenant_id)
        .filter(BillingAdjustment.is_active.is_(True))
        .filter(or_(BillingAdjustment.starts_on.is_(None), BillingAdjustment.starts_on <= on_date))
        .filter(or_(BillingAdjustment.ends_on.is_(None), BillingAdjustment.ends_on >= on_date))
        .order_by(BillingAdjustment.created_at.asc())
        .all()
    )


def _adjustment_amount(adjustment: BillingAdjustment, reference: Decimal) -> Decimal:
    value = Decimal(str(adjustment.value))
    if adjustment.value_type == AdjustmentValueType.percent:
        return round_money(reference * value / HUNDRED)
    return round_money(value)


def build_pricing_snapshot(
    subscription: BillingSubscription,
    adjustments: list[BillingAdjustment],
    fx: ResolvedFxRate,
    *,
    direct_debit: bool,
    discount_pct: Decimal,
    vat_rate: Decimal,
) -> PricingSnapshot:
    """Freeze the amounts of one billing cycle.

    Surcharges are added to the plan price, adjustment discounts are taken off
    the result, and the direct-debit discount only applies when the charge
    will be collected through a direct-debit mandate. VAT is computed on the
    discounted net and the USD total is converted with the resolved rate.
    """
    base = round_money(subscription.plan_price_usd or ZERO)

    addons = ZERO
    for adjustment in adjustments:
        if adjustment.kind == AdjustmentKind.surcharge:
            addons += _adjustment_amount(adjustment, base)
    addons = round_money(addons)

    gross = base + addons
    adjustment_discounts = ZERO
    for adjustment in adjustments:
        if adjustment.kind == AdjustmentKind.discount:
            adjustment_discounts += _adjustment_amount(adjustment, gross)
    adjustment_discounts = round_money(min(adjustment_discounts, gross))

    pre_discount_net = round_money(gross - adjustment_discounts)
    applied_pct = Decimal(str(discount_pct)) if direct_debit else ZERO
    applied_pct = max(ZERO, min(applied_pct, HUNDRED))
    discount_amount = round_money(pre_discount_net * applied_pct / HUNDRED)
    net = round_money(pre_discount_net - discount_amount)
    vat_amount = round_money(net * Decimal(str(vat_rate)))
    total_usd = round_money(net + vat_amount)
    total_ars = round_money(total_usd * fx.ars_per_usd)

    return PricingSnapshot(
        plan_key=subscription.plan_key,
        base_amount_usd=base,
        addons_total_usd=addons,
        adjustment_discounts_usd=adjustment_discounts,
        pre_discount_net_usd=pre_discount_net,
        discount_pct=round_money(applied_pct),
        discount_amount_usd=discount_amount,
        net_amount_usd=net,
        vat_rate=Decimal(str(vat_rate)),
        vat_amount_usd=vat_amount,
        total_usd=total_usd,
        fx_type=fx.fx_type,
        fx_rate_date=fx.rate_date,
        fx_rate_ars_per_usd=fx.ars_per_usd,
        total_ars=total_ars,
        adjustments=[
            {
                "id": str(adjustment.id),
                "kind": adjustment.kind.value,
                "value_type": adjustment.value_type.value,
                "value": str(adjustment.value),
                "label": adjustment.label,
            }
            for adjustment in adjustments
        ],
    )
