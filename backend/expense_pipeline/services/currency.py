from __future__ import annotations

import json
import logging
import math
import socket
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from expense_pipeline.core.errors import ConversionServiceError
from expense_pipeline.services.cache import CacheService
from expense_pipeline.services.policies import PolicyProvider

logger = logging.getLogger("expenses.currency")

RateSource = Literal["identity", "cache", "api", "event"]

# ISO 4217 currencies without minor units.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF",
        "CLP",
        "DJF",
        "GNF",
        "ISK",
        "JPY",
        "KMF",
        "KRW",
        "PYG",
        "RWF",
        "UGX",
        "UYI",
        "VND",
        "VUV",
        "XAF",
        "XOF",
        "XPF",
    }
)


def is_zero_decimal_currency(currency: Optional[str]) -> bool:
    return str(currency or "").strip().upper() in ZERO_DECIMAL_CURRENCIES


def round_base_amount(amount: float, base_currency: Optional[str]) -> float:
    """Integer for zero-decimal currencies, one decimal place otherwise (half-up)."""
    quantum = Decimal("1") if is_zero_decimal_currency(base_currency) else Decimal("0.1")
    return float(Decimal(str(amount)).quantize(quantum, rounding=ROUND_HALF_UP))


def _positive_finite(v: Any) -> Optional[float]:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f) or f <= 0:
        return None
    return f


def back_derive_rate(base_amount: float, original_amount: float) -> Optional[float]:
    if original_amount == 0:
        return None
    computed = float(base_amount) / float(original_amount)
    return computed if math.isfinite(computed) else None


def fx_cache_key(*, base_currency: str, from_currency: str, date: Optional[str]) -> str:
    d = str(date or "").strip() or "latest"
    return f"fx:{base_currency.upper()}:{from_currency.upper()}:{d}"


@dataclass(frozen=True)
class ConversionQuote:
    base_amount: float
    rate: Optional[float]
    source: Optional[str] = None


@dataclass(frozen=True)
class ConversionResult:
    base_amount: float
    rate: Optional[float]
    source: RateSource
    base_currency: str


class CurrencyConversionClient(ABC):
    @abstractmethod
    def convert(
        self,
        *,
        amount: float,
        from_currency: str,
        to_currency: str,
        date: Optional[str] = None,
    ) -> ConversionQuote: ...


class HttpCurrencyConversionClient(CurrencyConversionClient):
    """JSON client for the currency service ``POST {base_url}/convert``."""

    def __init__(self, base_url: Optional[str], *, timeout_ms: int = 5000) -> None:
        self._base_url = (base_url or "").rstrip("/") or None
        self._timeout_seconds = max(1, int(timeout_ms)) / 1000.0

    def convert(
        self,
        *,
        amount: float,
        from_currency: str,
        to_currency: str,
        date: Optional[str] = None,
    ) -> ConversionQuote:
        if not self._base_url:
            raise ConversionServiceError("CURRENCY_SERVICE_URL is required to convert currencies")

        url = f"{self._base_url}/convert"
        payload: dict[str, Any] = {
            "monto_original": amount,
            "moneda_original": from_currency,
            "moneda_base": to_currency,
        }
        if date:
            payload["fecha"] = date

        req = Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self._timeout_seconds) as resp:
                body = resp.read().decode("utf-8", "replace")
        except HTTPError as exc:
            raise ConversionServiceError(f"HTTP {exc.code} calling {url}") from exc
        except (URLError, socket.timeout, TimeoutError, OSError) as exc:
            raise ConversionServiceError(f"Currency service unreachable at {url}: {exc}") from exc

        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ConversionServiceError("Currency service returned invalid JSON") from exc

        return parse_conversion_payload(data)


def parse_conversion_payload(data: Any) -> ConversionQuote:
    if not isinstance(data, dict):
        raise ConversionServiceError("Invalid currency service response: expected an object")

    base_amount = data.get("monto_base", data.get("base_amount"))
    if isinstance(base_amount, bool) or not isinstance(base_amount, (int, float)):
        raise ConversionServiceError("Invalid currency service response: missing monto_base")
    if not math.isfinite(float(base_amount)):
        raise ConversionServiceError("Invalid currency service response: monto_base is not finite")

    raw_rate = data.get("tipo_cambio", data.get("rate"))
    rate = None
    if isinstance(raw_rate, (int, float)) and not isinstance(raw_rate, bool):
        rate = float(raw_rate) if math.isfinite(float(raw_rate)) else None

    source = None
    results = data.get("results")
    if isinstance(results, list) and results and isinstance(results[0], dict):
        source = results[0].get("rate_source")

    return ConversionQuote(base_amount=float(base_amount), rate=rate, source=source)


class CurrencyNormalizer:
    """Base-currency conversion with a tiered rate cache.

    Tiers: identity (same currency), shared cache keyed by
    base/source/date, then the external conversion service.
    """

    def __init__(
        self,
        *,
        cache: CacheService,
        client: CurrencyConversionClient,
        policies: PolicyProvider,
        fx_cache_ttl_seconds: int = 86400,
        base_currency_ttl_ms: int = 5000,
        clock=time.monotonic,
    ) -> None:
        self._cache = cache
        self._client = client
        self._policies = policies
        self._fx_ttl = int(fx_cache_ttl_seconds)
        self._base_ttl = max(0, int(base_currency_ttl_ms)) / 1000.0
        self._clock = clock
        self._lock = threading.Lock()
        self._base_currency: Optional[str] = None
        self._base_loaded_at: Optional[float] = None

    def resolve_base_currency(self) -> Optional[str]:
        now = self._clock()
        with self._lock:
            if self._base_loaded_at is not None and now - self._base_loaded_at < self._base_ttl:
                return self._base_currency

        raw = self._policies.get_base_currency()
        value = str(raw).strip().upper() if raw and str(raw).strip() else None
        with self._lock:
            self._base_currency = value
            self._base_loaded_at = now
        return value

    def invalidate_base_currency(self) -> None:
        with self._lock:
            self._base_currency = None
            self._base_loaded_at = None

    def _target_currency(self, base_currency: Optional[str], fallback: str) -> str:
        # An explicit base currency (per-request policies) beats the configured one.
        if base_currency and str(base_currency).strip():
            return str(base_currency).strip().upper()
        return self.resolve_base_currency() or fallback

    def convert(
        self,
        amount: float,
        from_currency: str,
        date: Optional[str] = None,
        *,
        base_currency: Optional[str] = None,
    ) -> ConversionResult:
        source_currency = str(from_currency or "").strip().upper()
        base = self._target_currency(base_currency, source_currency)

        if not source_currency or source_currency == base:
            return ConversionResult(
                base_amount=round_base_amount(amount, base),
                rate=1.0,
                source="identity",
                base_currency=base,
            )

        key = fx_cache_key(base_currency=base, from_currency=source_currency, date=date)
        cached_rate = _positive_finite(self._cache.get(key))
        if cached_rate is not None:
            return ConversionResult(
                base_amount=round_base_amount(amount * cached_rate, base),
                rate=cached_rate,
                source="cache",
                base_currency=base,
            )

        quote = self._client.convert(
            amount=amount, from_currency=source_currency, to_currency=base, date=date
        )

        rate = quote.rate
        if rate is None:
            rate = back_derive_rate(quote.base_amount, amount)

        if _positive_finite(rate) is not None:
            self._cache.set(key, repr(float(rate)), self._fx_ttl)

        if rate is not None:
            base_amount = round_base_amount(amount * rate, base)
        else:
            base_amount = round_base_amount(quote.base_amount, base)

        logger.info(
            "fx_rate_fetched",
            extra={
                "base_currency": base,
                "from_currency": source_currency,
                "date": date or "latest",
                "rate": rate,
                "upstream_source": quote.source,
            },
        )
        return ConversionResult(base_amount=base_amount, rate=rate, source="api", base_currency=base)

    def normalize_precomputed(
        self,
        base_amount: float,
        original_amount: float,
        *,
        from_currency: str,
        rate: Optional[float] = None,
        base_currency: Optional[str] = None,
    ) -> ConversionResult:
        """Round an upstream-supplied base amount; back-derive the rate when unknown."""
        base = self._target_currency(base_currency, str(from_currency or "").strip().upper())
        rounded = round_base_amount(base_amount, base)
        if rate is None:
            rate = back_derive_rate(rounded, original_amount)
        return ConversionResult(base_amount=rounded, rate=rate, source="event", base_currency=base)
