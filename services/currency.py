"""Currency conversion for vendor dashboards and payout listings.

Rate tables map a currency code to its rate relative to the base currency.
Conversion is fail-open: a missing rate returns the amount unchanged and is
reported through the registered missing-rate hooks so mis-pricing stays
observable.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func

from extensions import db
from models import ExchangeRate
from services.base import ValidationException
from services.commission_rates import to_decimal

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"

FALLBACK_RATES: Dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "AUD": Decimal("1.51"),
    "CAD": Decimal("1.36"),
    "JPY": Decimal("154.35"),
}

CURRENCY_SYMBOLS: Dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "AUD": "A$",
    "CAD": "C$",
    "JPY": "¥",
}

ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "HUF"})

CENTS = Decimal("0.01")
UNITS = Decimal("1")

MissingRateHook = Callable[[str, Mapping[str, Decimal]], None]

_missing_rate_hooks: List[MissingRateHook] = []


@dataclass
class ExchangeRateSnapshot:
    """Lightweight representation of a stored exchange rate."""

    provider: str
    base_currency: str
    quote_currency: str
    value: Decimal
    as_of_date: date
    fetched_at: datetime


def _to_decimal(value: object, default: str = "0") -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        return Decimal(default)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal(default)


def register_missing_rate_hook(hook: MissingRateHook) -> MissingRateHook:
    """Register ``hook(currency, rate_table)``, called whenever a rate is missing."""
    _missing_rate_hooks.append(hook)
    return hook


def unregister_missing_rate_hook(hook: MissingRateHook) -> None:
    if hook in _missing_rate_hooks:
        _missing_rate_hooks.remove(hook)


def _report_missing_rate(currency: str, rate_table: Mapping[str, Decimal]) -> None:
    logger.warning("No exchange rate for %s; returning amounts in the base currency", currency)
    for hook in list(_missing_rate_hooks):
        try:
            hook(currency, rate_table)
        except Exception:  # hook failures are logged, never raised
            logger.exception("Missing-rate hook %r failed", hook)


def is_zero_decimal(currency: str) -> bool:
    return (currency or "").upper() in ZERO_DECIMAL_CURRENCIES


def round_for_currency(amount: Decimal, currency: str) -> Decimal:
    """Round half-up to whole units for zero-decimal currencies, to cents otherwise."""
    quantum = UNITS if is_zero_decimal(currency) else CENTS
    return to_decimal(amount).quantize(quantum, rounding=ROUND_HALF_UP)


def _lookup_rate(target_currency: str, rate_table: Mapping[str, Decimal]) -> Optional[Decimal]:
    rate = rate_table.get(target_currency)
    if rate is None:
        return None
    return to_decimal(rate, field=f"{target_currency} rate")


def convert(amount, target_currency: str, rate_table: Mapping[str, Decimal]) -> Decimal:
    """Convert ``amount`` from the base currency into ``target_currency``.

    Returns the amount unchanged when the table has no rate for the target.
    A malformed or non-finite amount raises ``ValidationException``.
    """
    currency = (target_currency or DEFAULT_CURRENCY).upper()
    value = to_decimal(amount)
    rate = _lookup_rate(currency, rate_table)
    if rate is None:
        _report_missing_rate(currency, rate_table)
        return value
    return round_for_currency(value * rate, currency)


def convert_many(amounts: Iterable, target_currency: str, rate_table: Mapping[str, Decimal]) -> List[Decimal]:
    """Convert related figures with one rate lookup so they stay consistent."""
    currency = (target_currency or DEFAULT_CURRENCY).upper()
    values = [to_decimal(amount) for amount in amounts]
    rate = _lookup_rate(currency, rate_table)
    if rate is None:
        _report_missing_rate(currency, rate_table)
        return values
    return [round_for_currency(value * rate, currency) for value in values]


def is_supported_currency(currency: Optional[str]) -> bool:
    return bool(currency) and currency.upper() in CURRENCY_SYMBOLS


def resolve_display_currency(currency: Optional[str]) -> str:
    """Return ``currency`` upper-cased, or USD when it is not supported."""
    if is_supported_currency(currency):
        return currency.upper()
    return DEFAULT_CURRENCY


def format_amount(amount, currency: str = DEFAULT_CURRENCY) -> str:
    code = (currency or DEFAULT_CURRENCY).upper()
    symbol = CURRENCY_SYMBOLS.get(code, f"{code} ")
    value = round_for_currency(to_decimal(amount), code)
    sign = "-" if value < 0 else ""
    if is_zero_decimal(code):
        return f"{sign}{symbol}{abs(value):,.0f}"
    return f"{sign}{symbol}{abs(value):,.2f}"


def _latest_rates(base_currency: str) -> List[ExchangeRate]:
    latest = (
        db.session.query(
            ExchangeRate.quote_currency,
            func.max(ExchangeRate.as_of_date).label("as_of_date"),
        )
        .filter(ExchangeRate.base_currency == base_currency)
        .group_by(ExchangeRate.quote_currency)
        .subquery()
    )
    return (
        ExchangeRate.query.join(
            latest,
            (ExchangeRate.quote_currency == latest.c.quote_currency)
            & (ExchangeRate.as_of_date == latest.c.as_of_date),
        )
        .filter(ExchangeRate.base_currency == base_currency)
        .order_by(ExchangeRate.fetched_at.asc(), ExchangeRate.id.asc())
        .all()
    )


def get_rate_table(base_currency: str = DEFAULT_CURRENCY) -> Dict[str, Decimal]:
    """Return the current rate table relative to ``base_currency``.

    Stored rates win over the static fallback table; the base currency always
    maps to 1.
    """

    base = (base_currency or DEFAULT_CURRENCY).upper()
    table: Dict[str, Decimal] = {}

    base_fallback = FALLBACK_RATES.get(base)
    if base_fallback:
        for code, rate in FALLBACK_RATES.items():
            table[code] = (rate / base_fallback).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)

    # later rows (by fetch time) overwrite earlier ones for the same day
    for row in _latest_rates(base):
        table[row.quote_currency.upper()] = _to_decimal(row.value)

    table[base] = Decimal("1")
    return table


def store_rate(
    quote_currency: str,
    value,
    base_currency: str = DEFAULT_CURRENCY,
    provider: str = "manual",
    as_of: Optional[date] = None,
) -> ExchangeRateSnapshot:
    """Persist a rate for the day, replacing an earlier one from the same provider."""

    rate = to_decimal(value, field="value")
    if rate <= 0:
        raise ValidationException("Exchange rate must be positive", details={"value": str(value)})

    as_of_date = as_of or date.today()
    base = base_currency.upper()
    quote = quote_currency.upper()
    exchange = ExchangeRate.query.filter_by(
        provider=provider,
        base_currency=base,
        quote_currency=quote,
        as_of_date=as_of_date,
    ).first()
    if exchange is None:
        exchange = ExchangeRate(
            provider=provider,
            base_currency=base,
            quote_currency=quote,
            as_of_date=as_of_date,
        )
        db.session.add(exchange)
    exchange.value = rate
    exchange.fetched_at = datetime.utcnow()
    db.session.commit()

    logger.info("Stored exchange rate %s/%s=%s (%s)", base, quote, rate, provider)
    return ExchangeRateSnapshot(
        provider=exchange.provider,
        base_currency=exchange.base_currency,
        quote_currency=exchange.quote_currency,
        value=_to_decimal(exchange.value),
        as_of_date=exchange.as_of_date,
        fetched_at=exchange.fetched_at,
    )
