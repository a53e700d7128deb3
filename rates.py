"""Exchange rate sources.

A rate source answers ``spot_rate(base, target)`` with the number of
``target`` units one ``base`` unit buys. Sources never retry and never cache;
that is the converter's job.
"""
from decimal import Decimal, InvalidOperation

import requests
import structlog

import config
from errors import RateUnavailable

logger = structlog.get_logger(__name__)

# units per USD, used when USE_EXTERNAL is off
STATIC_USD_RATES = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.9"),
    "GBP": Decimal("0.79"),
    "INR": Decimal("82"),
    "JPY": Decimal("149.5"),
    "CAD": Decimal("1.36"),
    "AUD": Decimal("1.52"),
}


class ExchangeRateApiSource:
    """Live rates from an exchangerate-api.com style ``/latest/{base}`` endpoint."""

    def __init__(self, base_url: str = config.EXCHANGE_RATE_BASE_URL, timeout: float = config.RATE_SOURCE_TIMEOUT, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def spot_rate(self, base: str, target: str) -> Decimal:
        url = f"{self.base_url}/{base}"
        try:
            resp = self.http.get(url, timeout=self.timeout)
            resp.raise_for_status()
            rates = resp.json().get("rates") or {}
        except (requests.RequestException, ValueError) as exc:
            logger.warning("rate_source_failed", base=base, target=target, error=str(exc))
            raise RateUnavailable(f"rate source failed for {base}->{target}", base=base, target=target) from exc
        if target not in rates:
            raise RateUnavailable(f"no rate for {base}->{target}", base=base, target=target)
        return _positive(rates[target], base, target)


class StaticRateSource:
    """Fixed cross rates derived from a units-per-USD table."""

    def __init__(self, usd_rates: dict = None):
        self.usd_rates = dict(usd_rates or STATIC_USD_RATES)

    def spot_rate(self, base: str, target: str) -> Decimal:
        if base not in self.usd_rates or target not in self.usd_rates:
            raise RateUnavailable(f"no rate for {base}->{target}", base=base, target=target)
        return _positive(Decimal(str(self.usd_rates[target])) / Decimal(str(self.usd_rates[base])), base, target)


def _positive(value, base: str, target: str) -> Decimal:
    try:
        rate = Decimal(str(value))
    except InvalidOperation as exc:
        raise RateUnavailable(f"malformed rate for {base}->{target}", base=base, target=target) from exc
    if not rate.is_finite() or rate <= 0:
        raise RateUnavailable(f"non-positive rate for {base}->{target}", base=base, target=target)
    return rate


def default_rate_source():
    return ExchangeRateApiSource() if config.USE_EXTERNAL else StaticRateSource()
