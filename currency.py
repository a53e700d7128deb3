"""Currency conversion frozen at submission time.

Rates come from a persisted, append-only cache (``ExchangeRate`` rows).
A cached rate younger than the freshness window is reused; otherwise the rate
source is asked and a new row is appended. Rows are never updated, so every
conversion an expense ever froze can be traced back to the row it used.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

import config
from errors import ValidationError
from models import ExchangeRate, utcnow

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class Conversion:
    converted_amount: Decimal
    rate: Decimal
    timestamp: datetime


def normalize_currency(code: str) -> str:
    code = (code or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"invalid currency code {code!r}")
    return code


def to_cents(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class CurrencyConverter:
    def __init__(self, session: Session, source, ttl_seconds: int = config.RATE_CACHE_TTL_SECONDS,
                 clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.source = source
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def convert(self, base: str, target: str, amount) -> Conversion:
        base, target = normalize_currency(base), normalize_currency(target)
        now = self.clock()
        if base == target:
            return Conversion(to_cents(amount), Decimal("1"), now)

        cached = self.cached_rate(base, target, now)
        if cached is not None:
            logger.info("rate_cache_hit", base=base, target=target, rate=cached.rate, rate_timestamp=cached.timestamp.isoformat())
            rate, stamp = Decimal(str(cached.rate)), cached.timestamp
        else:
            # raises RateUnavailable; nothing has been written yet
            rate = self.source.spot_rate(base, target)
            stamp = now
            self._append(base, target, rate, stamp)
            logger.info("rate_fetched", base=base, target=target, rate=str(rate))

        return Conversion(to_cents(Decimal(str(amount)) * rate), rate, stamp)

    def cached_rate(self, base: str, target: str, now: Optional[datetime] = None) -> Optional[ExchangeRate]:
        now = now or self.clock()
        stmt = (
            select(ExchangeRate)
            .where(ExchangeRate.base_currency == base)
            .where(ExchangeRate.target_currency == target)
            .where(ExchangeRate.timestamp >= now - self.ttl)
            .where(ExchangeRate.timestamp <= now)
            .order_by(ExchangeRate.timestamp.desc(), ExchangeRate.id.desc())
        )
        return self.session.exec(stmt).first()

    def history(self, base: str, target: str, since: Optional[datetime] = None, until: Optional[datetime] = None) -> List[ExchangeRate]:
        stmt = (
            select(ExchangeRate)
            .where(ExchangeRate.base_currency == normalize_currency(base))
            .where(ExchangeRate.target_currency == normalize_currency(target))
        )
        if since is not None:
            stmt = stmt.where(ExchangeRate.timestamp >= since)
        if until is not None:
            stmt = stmt.where(ExchangeRate.timestamp <= until)
        return list(self.session.exec(stmt.order_by(ExchangeRate.timestamp, ExchangeRate.id)).all())

    def _append(self, base: str, target: str, rate: Decimal, stamp: datetime):
        row = ExchangeRate(base_currency=base, target_currency=target, rate=float(rate), timestamp=stamp)
        try:
            with self.session.begin_nested():
                self.session.add(row)
        except IntegrityError:
            # same (base, target, timestamp) already cached by a concurrent request
            logger.info("rate_cache_duplicate", base=base, target=target, rate_timestamp=stamp.isoformat())
