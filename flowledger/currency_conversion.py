from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
import json
import logging
import time
from typing import Iterable, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

logger = logging.getLogger(__name__)

REFERENCE_CURRENCY = "USD"
CENTS = Decimal("0.01")

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "NZD": Decimal("1.64"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.45"),
    "CNY": Decimal("7.24"),
    "HKD": Decimal("7.82"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RateProvider(Protocol):
    def get_rates(self, currencies: Iterable[str]) -> Mapping[str, Decimal]:
        ...


@dataclass(frozen=True)
class RateSnapshot:
    """Point-in-time rates, expressed as units of each currency per 1 reference unit.

    One snapshot is fetched per logical operation so every conversion inside
    that operation sees the same rates.
    """

    rates: Mapping[str, Decimal]
    base_currency: str = REFERENCE_CURRENCY

    def __post_init__(self) -> None:
        base = normalize_currency(self.base_currency)
        normalized = {normalize_currency(code): _coerce_amount(rate) for code, rate in self.rates.items()}
        normalized[base] = Decimal("1")
        object.__setattr__(self, "base_currency", base)
        object.__setattr__(self, "rates", normalized)

    def rate_for(self, currency: str) -> Decimal | None:
        try:
            return self.rates.get(normalize_currency(currency))
        except ValueError:
            return None

    def __contains__(self, currency: object) -> bool:
        return isinstance(currency, str) and self.rate_for(currency) is not None


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rates(self, currencies: Iterable[str]) -> Mapping[str, Decimal]:
        found: dict[str, Decimal] = {}
        for currency in currencies:
            normalized = normalize_currency(currency)
            if normalized in self.rates:
                found[normalized] = _coerce_amount(self.rates[normalized])
        return found


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float | None


@dataclass
class FrankfurterRateProvider:
    base_currency: str = REFERENCE_CURRENCY
    base_url: str = "https://api.frankfurter.app"
    cache_ttl_seconds: int = 12 * 60 * 60
    timeout_seconds: float = 8
    _cache: dict[str, CachedRates] = field(default_factory=dict)

    def get_rates(self, currencies: Iterable[str]) -> Mapping[str, Decimal]:
        wanted = {normalize_currency(currency) for currency in currencies}
        if not wanted:
            return {}
        rates = self._get_rates(normalize_currency(self.base_currency))
        return {code: rates[code] for code in wanted if code in rates}

    def _get_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        # Cached per calendar day so concurrent operations on the same day share rates.
        cache_key = f"{base_currency}:{date.today().isoformat()}"
        cached = self._cache.get(cache_key)
        now = time.monotonic()
        if cached and (cached.expires_at is None or cached.expires_at > now):
            return cached.rates

        rates = self._fetch_rates(base_currency)
        self._cache.clear()
        self._cache[cache_key] = CachedRates(rates=rates, expires_at=now + self.cache_ttl_seconds)
        return rates

    def _fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        url = f"{self.base_url}/latest?from={base_currency}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        parsed = {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        parsed[base_currency] = Decimal("1")
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: StaticRateProvider

    def get_rates(self, currencies: Iterable[str]) -> Mapping[str, Decimal]:
        wanted = list(currencies)
        try:
            return self.primary.get_rates(wanted)
        except RateProviderUnavailable:
            return self.fallback.get_rates(wanted)


def get_rates(
    currencies: Iterable[str],
    rate_provider: RateProvider | None = None,
    base_currency: str = REFERENCE_CURRENCY,
) -> RateSnapshot:
    provider = rate_provider or StaticRateProvider()
    codes = {normalize_currency(code) for code in currencies if code}
    if not codes:
        return RateSnapshot(rates={}, base_currency=base_currency)
    return RateSnapshot(rates=provider.get_rates(sorted(codes)), base_currency=base_currency)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    snapshot: RateSnapshot,
) -> Decimal | None:
    """Convert an amount with a fixed snapshot; ``None`` when either rate is unknown.

    No rounding happens here; callers quantize the final monetary result.
    """
    coerced_amount = _coerce_amount(amount)
    if source_currency.strip().upper() == target_currency.strip().upper():
        return coerced_amount

    source_rate = snapshot.rate_for(source_currency)
    target_rate = snapshot.rate_for(target_currency)
    if source_rate is None or target_rate is None or source_rate == 0:
        return None
    amount_in_base = coerced_amount / source_rate
    return amount_in_base * target_rate


def convert_or_passthrough(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    snapshot: RateSnapshot,
) -> Decimal:
    converted = convert_amount(amount, source_currency, target_currency, snapshot)
    if converted is None:
        logger.warning(
            "No rate for %s->%s, applying %s unconverted", source_currency, target_currency, amount
        )
        return _coerce_amount(amount)
    return converted


def quantize_money(value: Decimal | int | float | str) -> Decimal:
    return _coerce_amount(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
