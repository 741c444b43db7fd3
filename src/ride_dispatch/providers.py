"""Settings providers: pricing rates and timezone, read at computation time."""

from datetime import tzinfo

from pydantic import ValidationError as SettingsValidationError

from ride_dispatch.core.exceptions import ConfigurationError
from ride_dispatch.pricing import PricingRates, zone_for
from ride_dispatch.settings import PricingSettings


def _load_pricing() -> PricingSettings:
    try:
        return PricingSettings()
    except SettingsValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
        raise ConfigurationError("Invalid pricing settings", details={"errors": errors}) from e


class EnvSettingsProvider:
    """Re-reads PRICING_* environment settings on every call.

    Invalid values, an unknown timezone included, raise ConfigurationError.
    """

    def pricing_rates(self) -> PricingRates:
        return PricingRates.from_settings(_load_pricing())

    def timezone(self) -> tzinfo:
        return zone_for(_load_pricing().timezone)


class StaticSettingsProvider:
    """Fixed rates, e.g. loaded once by the host or built in tests."""

    def __init__(self, rates: PricingRates) -> None:
        self._rates = rates
        self._zone = zone_for(rates.timezone)

    def pricing_rates(self) -> PricingRates:
        return self._rates

    def timezone(self) -> tzinfo:
        return self._zone
