"""Price breakdown calculation for rides."""

from datetime import datetime, time
from typing import TYPE_CHECKING, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from ride_dispatch.core.exceptions import ConfigurationError

if TYPE_CHECKING:
    from ride_dispatch.ride import TripFacts
    from ride_dispatch.settings import PricingSettings


class PricingRates(BaseModel):
    """Configured rates, as supplied by the settings provider."""

    base_price: float = Field(ge=0)
    price_per_km: float = Field(ge=0)
    price_per_minute: float = Field(ge=0)
    night_start: time = time(22, 0)
    night_end: time = time(6, 0)
    night_surcharge_percent: float = Field(default=0.0, ge=0)
    weekend_days: list[int] = Field(default_factory=lambda: [4, 5])
    weekend_surcharge_percent: float = Field(default=0.0, ge=0)
    discount_type: Literal["flat", "percent"] = "flat"
    discount_value: float = Field(default=0.0, ge=0)
    commission_rate: float = Field(default=0.10, ge=0, le=1)
    timezone: str = "UTC"

    @classmethod
    def from_settings(cls, settings: "PricingSettings") -> "PricingRates":
        return cls.model_validate(settings.model_dump())


class PricingInputs(BaseModel):
    """Trip facts that feed the price; compared at finish to detect changes."""

    distance_km: float = Field(ge=0)
    duration_min: float = Field(ge=0)
    surge_multiplier: float = Field(ge=1.0)


class PricingDetails(BaseModel):
    """Breakdown stored verbatim on the ride."""

    base_price: float = Field(ge=0)
    distance_price: float = Field(ge=0)
    time_price: float = Field(ge=0)
    subtotal: float = Field(ge=0)
    surge_multiplier: float = Field(ge=1.0)
    surge_amount: float = Field(ge=0)
    night_surcharge: float = Field(ge=0)
    weekend_surcharge: float = Field(ge=0)
    total_before_discount: float = Field(ge=0)
    discount: float = Field(ge=0)
    final_total: float = Field(ge=0)
    calculated_at: datetime
    inputs: PricingInputs


def zone_for(name: str) -> ZoneInfo:
    """Look up an IANA zone, raising ConfigurationError for unknown names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name}", details={"timezone": name}) from e


def is_night(local_time: time, start: time, end: time) -> bool:
    """True when local_time falls in [start, end), wrapping past midnight."""
    if start == end:
        return False
    if start < end:
        return start <= local_time < end
    return local_time >= start or local_time < end


def _money(value: float) -> float:
    return round(value, 2)


class PricingCalculator:
    """Calculates ride price breakdowns from trip facts and configured rates.

    Pure: the same trip facts, rates and dispatch time always produce the same
    breakdown. Distance and duration are estimates supplied by the caller.
    """

    def compute(
        self,
        trip: "TripFacts | PricingInputs",
        rates: PricingRates,
        dispatch_time: datetime,
    ) -> PricingDetails:
        if dispatch_time.tzinfo is None:
            raise ValueError("dispatch_time must be timezone-aware")

        inputs = PricingInputs(
            distance_km=trip.distance_km,
            duration_min=trip.duration_min,
            surge_multiplier=trip.surge_multiplier,
        )
        local = dispatch_time.astimezone(zone_for(rates.timezone))

        base_price = rates.base_price
        distance_price = inputs.distance_km * rates.price_per_km
        time_price = inputs.duration_min * rates.price_per_minute
        subtotal = base_price + distance_price + time_price

        # Each adjustment is a percentage of the same pre-discount subtotal.
        surge_amount = subtotal * (inputs.surge_multiplier - 1.0)
        night_surcharge = 0.0
        if is_night(local.time(), rates.night_start, rates.night_end):
            night_surcharge = subtotal * rates.night_surcharge_percent / 100
        weekend_surcharge = 0.0
        if local.weekday() in rates.weekend_days:
            weekend_surcharge = subtotal * rates.weekend_surcharge_percent / 100

        total_before_discount = subtotal + surge_amount + night_surcharge + weekend_surcharge

        if rates.discount_type == "percent":
            discount = total_before_discount * min(rates.discount_value, 100.0) / 100
        else:
            discount = rates.discount_value
        discount = min(discount, total_before_discount)

        final_total = max(0.0, total_before_discount - discount)

        return PricingDetails(
            base_price=_money(base_price),
            distance_price=_money(distance_price),
            time_price=_money(time_price),
            subtotal=_money(subtotal),
            surge_multiplier=inputs.surge_multiplier,
            surge_amount=_money(surge_amount),
            night_surcharge=_money(night_surcharge),
            weekend_surcharge=_money(weekend_surcharge),
            total_before_discount=_money(total_before_discount),
            discount=_money(discount),
            final_total=_money(final_total),
            calculated_at=dispatch_time,
            inputs=inputs,
        )


def commission_for(price: float, rate: float) -> float:
    """Commission owed on a ride price."""
    return _money(price * rate)
