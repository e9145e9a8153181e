from __future__ import annotations

import http.client
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Callable, Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    fetched_at: datetime


class RateProvider(Protocol):
    def quote(self, source: str, target: str) -> FxQuote: ...


class ExchangeRateApiProvider:
    """Latest rates from an exchangerate-api style endpoint.

    ``GET {api_url}/{SOURCE}`` answers ``{"conversion_rates": {"BRL": 5.4, ...}}``
    with every rate relative to the source currency.
    """

    name = "exchangerate-api"

    def __init__(self, api_url: str, *, timeout: float) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def quote(self, source: str, target: str) -> FxQuote:
        url = f"{self.api_url}/{source.upper()}"
        req = Request(url, headers={"Accept": "application/json"})
        fetched_at = datetime.now(timezone.utc)
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (
            URLError,
            TimeoutError,
            OSError,
            http.client.HTTPException,
            UnicodeDecodeError,
            json.JSONDecodeError,
        ) as exc:
            raise UpstreamError(f"Failed to fetch FX rate for {source}") from exc

        try:
            rate = Decimal(str(payload["conversion_rates"][target.upper()]))
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise UpstreamError("Unexpected FX provider response") from exc
        if rate <= 0:
            raise UpstreamError(f"FX provider returned non-positive rate {rate}")
        return FxQuote(
            provider=self.name,
            base=source.upper(),
            quote=target.upper(),
            rate=rate,
            fetched_at=fetched_at,
        )


class StaticRateProvider:
    name = "static"

    def __init__(self, rates: dict[str, Decimal], base_currency: str) -> None:
        self.rates = {code.upper(): Decimal(str(rate)) for code, rate in rates.items()}
        self.base_currency = base_currency.upper()

    def quote(self, source: str, target: str) -> FxQuote:
        if target.upper() != self.base_currency:
            raise UpstreamError(f"No static rate towards {target}")
        try:
            rate = self.rates[source.upper()]
        except KeyError as exc:
            raise UpstreamError(f"No static rate for {source}") from exc
        return FxQuote(
            provider=self.name,
            base=source.upper(),
            quote=target.upper(),
            rate=rate,
            fetched_at=datetime.now(timezone.utc),
        )


class CachedRateProvider:
    """TTL cache in front of another provider. Failures are never cached."""

    def __init__(
        self,
        inner: RateProvider,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.inner = inner
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[tuple[str, str], tuple[float, FxQuote]] = {}
        self._lock = threading.Lock()

    def quote(self, source: str, target: str) -> FxQuote:
        key = (source.upper(), target.upper())
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry and now - entry[0] < self.ttl_seconds:
                return entry[1]
        quote = self.inner.quote(source, target)
        with self._lock:
            self._entries[key] = (now, quote)
        return quote

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CurrencyNormalizer:
    def __init__(self, provider: RateProvider, base_currency: str) -> None:
        self.provider = provider
        self.base_currency = base_currency.upper()

    def is_base(self, currency: object) -> bool:
        return _code(currency) == self.base_currency

    def normalize(self, amount_cents: int, currency: object) -> int:
        source = _code(currency)
        if source == self.base_currency:
            return amount_cents
        quote = self.provider.quote(source, self.base_currency)
        converted = (Decimal(amount_cents) * quote.rate).to_integral_value(
            rounding=ROUND_FLOOR
        )
        logger.debug(
            f"fx_normalize: source={source} rate={quote.rate} "
            f"amount={amount_cents} converted={converted}"
        )
        return int(converted)


def _code(currency: object) -> str:
    value = getattr(currency, "value", currency)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid currency: {currency!r}")
    return value.strip().upper()


def build_rate_provider(settings: Optional[Settings] = None) -> RateProvider:
    settings = settings or get_settings()
    provider_name = (settings.fx_provider or "exchangerate-api").lower()
    provider: RateProvider
    if provider_name == "exchangerate-api":
        provider = ExchangeRateApiProvider(
            settings.fx_api_url, timeout=settings.fx_timeout_secs
        )
    elif provider_name == "static":
        provider = StaticRateProvider(
            {code: Decimal(rate) for code, rate in settings.fx_static_rates.items()},
            settings.base_currency,
        )
    else:
        raise ValueError(f"Unsupported FX provider: {provider_name}")
    if settings.fx_cache_ttl_secs > 0:
        provider = CachedRateProvider(provider, settings.fx_cache_ttl_secs)
    return provider


def build_normalizer(settings: Optional[Settings] = None) -> CurrencyNormalizer:
    settings = settings or get_settings()
    return CurrencyNormalizer(build_rate_provider(settings), settings.base_currency)
