"""
Currency and FX Module

Decimal rounding rules for amounts and rates, currency code validation, and
the FX resolver used to convert invoice amounts into their loan's currency.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from datetime import datetime, date
from typing import Any, Dict, List, Optional
from enum import Enum
import re
import uuid

from .async_storage import AsyncStorageInterface
from .clock import Clock, SystemClock
from .exceptions import ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageRecord, FX_RATES_TABLE, parse_datetime, parse_date, parse_decimal

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
RATE_QUANTUM = Decimal('0.0001')
ONE = Decimal('1')

_CURRENCY_CODE = re.compile(r'^[A-Z]{3}$')

logger = get_logger(__name__)


def round2(value: Decimal) -> Decimal:
    """Round a currency amount to cents, half away from zero"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round4(value: Decimal) -> Decimal:
    """Round a rate to 4 decimal places, half away from zero"""
    return to_decimal(value).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """
    Convert a number or numeric string to Decimal.

    Floats go through str() so that 0.1 becomes Decimal('0.1'), not its
    binary expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Expected a number, got {value!r}")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValidationError(f"Expected a number, got {type(value).__name__}")


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValidationError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Value must be a non-empty string")

    clean_value = re.sub(r'[^\d.,\-+eE]', '', value.strip())

    # Both comma and dot - assume comma is thousands separator
    if ',' in clean_value and '.' in clean_value:
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 3 and len(parts[1]) != 3:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValidationError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValidationError(f"Cannot convert '{value}' to a finite Decimal")
    return result


def validate_currency_code(code: str) -> str:
    """Normalise and validate an ISO 4217 currency code"""
    if not isinstance(code, str) or not _CURRENCY_CODE.match(code.strip().upper()):
        raise ValidationError(f"Invalid currency code: {code!r}")
    return code.strip().upper()


@dataclass
class FxRate(StorageRecord):
    """Conversion factor from one currency to another, effective from a date"""
    from_currency: str
    to_currency: str
    rate: Decimal
    effective_date: date
    source: str = "manual"

    def __post_init__(self):
        self.from_currency = validate_currency_code(self.from_currency)
        self.to_currency = validate_currency_code(self.to_currency)
        self.rate = to_decimal(self.rate)
        if self.rate <= Decimal('0'):
            raise ValidationError("FX rate must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FxRate':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            from_currency=data['from_currency'],
            to_currency=data['to_currency'],
            rate=parse_decimal(data['rate']),
            effective_date=parse_date(data['effective_date']),
            source=data.get('source', 'manual'),
        )


class FxMethod(Enum):
    """How a conversion factor was obtained"""
    IDENTITY = "identity"
    DIRECT = "direct"
    INVERSE = "inverse"
    FALLBACK = "fallback"  # No rate on record, 1:1 assumed


@dataclass(frozen=True)
class FxQuote:
    """Resolved conversion factor"""
    from_currency: str
    to_currency: str
    rate: Decimal
    method: FxMethod
    as_of: date

    @property
    def degraded(self) -> bool:
        return self.method == FxMethod.FALLBACK


class FxResolver:
    """
    Looks up conversion factors as of a date.

    Missing market data never fails a recalculation: when neither the pair
    nor its inverse has a rate on or before the date, a 1:1 factor is returned
    and a warning is logged.
    """

    def __init__(self, storage: AsyncStorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table_name = FX_RATES_TABLE

    async def add_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate: Decimal,
        effective_date: date,
        source: str = "manual"
    ) -> FxRate:
        """Persist a new FX rate row"""
        now = self.clock.now()
        fx_rate = FxRate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            from_currency=from_currency,
            to_currency=to_currency,
            rate=rate,
            effective_date=effective_date,
            source=source,
        )
        await self.storage.save(self.table_name, fx_rate.id, fx_rate.to_dict())
        return fx_rate

    async def list_rates(self, from_currency: str, to_currency: str) -> List[FxRate]:
        """All rows for a pair, oldest effective date first"""
        rows = await self.storage.find(self.table_name, {
            'from_currency': from_currency.upper(),
            'to_currency': to_currency.upper(),
        })
        rates = [FxRate.from_dict(row) for row in rows]
        rates.sort(key=lambda r: r.effective_date)
        return rates

    async def _latest(self, from_currency: str, to_currency: str, as_of: date) -> Optional[FxRate]:
        candidates = [
            r for r in await self.list_rates(from_currency, to_currency)
            if r.effective_date <= as_of
        ]
        # list_rates sorts stably, so the last row saved wins a same-day tie
        return candidates[-1] if candidates else None

    async def resolve(
        self,
        from_currency: str,
        to_currency: str,
        as_of: Optional[date] = None
    ) -> FxQuote:
        """Resolve the conversion factor and report how it was obtained"""
        as_of = as_of or self.clock.today()
        if isinstance(as_of, datetime):
            as_of = as_of.date()
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()

        if from_currency == to_currency:
            return FxQuote(from_currency, to_currency, ONE, FxMethod.IDENTITY, as_of)

        direct = await self._latest(from_currency, to_currency, as_of)
        if direct:
            return FxQuote(from_currency, to_currency, direct.rate, FxMethod.DIRECT, as_of)

        inverse = await self._latest(to_currency, from_currency, as_of)
        if inverse:
            return FxQuote(from_currency, to_currency, ONE / inverse.rate, FxMethod.INVERSE, as_of)

        log_action(
            logger, "warning",
            f"No FX rate found for {from_currency}/{to_currency}, using 1:1",
            action="fx_fallback",
            resource=f"{from_currency}/{to_currency}",
            extra={"as_of": as_of.isoformat()}
        )
        return FxQuote(from_currency, to_currency, ONE, FxMethod.FALLBACK, as_of)

    async def rate(
        self,
        from_currency: str,
        to_currency: str,
        as_of: Optional[date] = None
    ) -> Decimal:
        """Conversion factor from from_currency to to_currency"""
        quote = await self.resolve(from_currency, to_currency, as_of)
        return quote.rate
