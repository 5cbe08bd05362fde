from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.billing import FxRate
from app.services.collections.errors import FxRateMissing


@dataclass(frozen=True)
class ResolvedFxRate:
    fx_type: str
    rate_date: date
    ars_per_usd: Decimal
    requested_date: date

    @property
    def is_stale(self) -> bool:
        return self.rate_date != self.requested_date


class FxRateResolver:
    """Looks up stored FX rates; rates are never created here.

    An exact ``(fx_type, date)`` match is always preferred. Falling back to the
    latest rate on or before the date is only allowed with ``override_fx``.
    Resolved rates are memoised per instance, so one resolver should live for
    one operation only.
    """

    def __init__(self, db: Session, fx_type: str) -> None:
        self.db = db
        self.fx_type = fx_type
        self._cache: dict[tuple[date, bool], ResolvedFxRate] = {}

    def resolve(self, rate_date: date, override_fx: bool = False) -> ResolvedFxRate:
        cache_key = (rate_date, override_fx)
        if cache_key in self._cache:
            return self._cache[cache_key]

        exact = (
            self.db.query(FxRate)
            .filter(FxRate.fx_type == self.fx_type)
            .filter(FxRate.rate_date == rate_date)
            .first()
        )
        if exact:
            rate = exact
        elif not override_fx:
            raise FxRateMissing(
                f"Missing {self.fx_type} rate for {rate_date.isoformat()}",
                fx_type=self.fx_type,
                rate_date=rate_date.isoformat(),
            )
        else:
            rate = (
                self.db.query(FxRate)
                .filter(FxRate.fx_type == self.fx_type)
                .filter(FxRate.rate_date <= rate_date)
                .order_by(FxRate.rate_date.desc())
                .first()
            )
            if not rate:
                raise FxRateMissing(
                    f"No {self.fx_type} rate available on or before {rate_date.isoformat()}",
                    fx_type=self.fx_type,
                    rate_date=rate_date.isoformat(),
                )

        resolved = ResolvedFxRate(
            fx_type=self.fx_type,
            rate_date=rate.rate_date,
            ars_per_usd=Decimal(str(rate.ars_per_usd)),
            requested_date=rate_date,
        )
        self._cache[cache_key] = resolved
        return resolved


def resolve_fx_rate(
    db: Session, fx_type: str, rate_date: date, override_fx: bool = False
) -> ResolvedFxRate:
    return FxRateResolver(db, fx_type).resolve(rate_date, override_fx=override_fx)
