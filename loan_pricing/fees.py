"""
Fee Engine Module

Computes fee amounts for loans from their calculation type (flat, percentage
or tiered) and a basis amount, and stores the fee templates (FeeConfig) that
loan fees are created from.
"""

from decimal import Decimal
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import re
import uuid

from .async_storage import AsyncStorageInterface
from .clock import Clock, SystemClock
from .currency import round2, to_decimal
from .exceptions import NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageRecord, FEE_CONFIGS_TABLE, parse_datetime, parse_decimal


logger = get_logger(__name__)

_FEE_CODE = re.compile(r'^[A-Z0-9_]{1,10}$')

UPDATABLE_FEE_CONFIG_FIELDS = frozenset({
    'code', 'name', 'fee_type', 'calculation_type', 'default_flat_amount', 'default_rate',
    'default_basis_amount', 'default_tiers', 'is_active',
})


class FeeType(Enum):
    """Commercial category of a fee"""
    ARRANGEMENT = "arrangement"
    COMMITMENT = "commitment"
    FACILITY = "facility"
    LATE_PAYMENT = "late_payment"
    CUSTOM = "custom"


class FeeCalculationType(Enum):
    """How a fee amount is derived"""
    FLAT = "flat"              # Fixed amount
    PERCENTAGE = "percentage"  # Rate applied to a basis amount
    TIERED = "tiered"          # Progressive rates across bands of the basis


class BasisAmount(Enum):
    """Loan figure a percentage or tiered fee is charged on"""
    PRINCIPAL = "principal"
    OUTSTANDING = "outstanding"
    TOTAL_INVOICES = "total_invoices"


@dataclass
class FeeTier:
    """One band of a tiered fee; max_amount None means unbounded"""
    min_amount: Decimal
    max_amount: Optional[Decimal]
    rate: Decimal

    def __post_init__(self):
        self.min_amount = to_decimal(self.min_amount)
        if self.max_amount is not None:
            self.max_amount = to_decimal(self.max_amount)
        self.rate = to_decimal(self.rate)

        if self.min_amount < Decimal('0'):
            raise ValidationError("Tier min_amount cannot be negative")
        if self.max_amount is not None and self.max_amount < Decimal('0'):
            raise ValidationError("Tier max_amount cannot be negative")
        if self.rate < Decimal('0') or self.rate > Decimal('1'):
            raise ValidationError("Tier rate must be between 0 and 1")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'min_amount': str(self.min_amount),
            'max_amount': str(self.max_amount) if self.max_amount is not None else None,
            'rate': str(self.rate),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeeTier':
        return cls(
            min_amount=parse_decimal(data['min_amount']),
            max_amount=parse_decimal(data.get('max_amount')),
            rate=parse_decimal(data['rate']),
        )


def validate_tiers(tiers: List[FeeTier]) -> None:
    """
    Check that tiers cover [0, inf) or [0, max) without gaps or overlaps.

    Raises:
        ValidationError: On an empty list, a first tier not starting at zero,
            an empty or inverted band, a gap or overlap, or an unbounded tier
            that is not the last one.
    """
    if not tiers:
        raise ValidationError("Tiered fees require at least one tier")

    ordered = sorted(tiers, key=lambda t: t.min_amount)
    if ordered[0].min_amount != Decimal('0'):
        raise ValidationError("First tier must start at 0")

    for index, tier in enumerate(ordered):
        is_last = index == len(ordered) - 1
        if tier.max_amount is None:
            if not is_last:
                raise ValidationError("Only the last tier may be unbounded")
            continue
        if tier.max_amount <= tier.min_amount:
            raise ValidationError(
                f"Tier max_amount {tier.max_amount} must exceed min_amount {tier.min_amount}"
            )
        if not is_last and ordered[index + 1].min_amount != tier.max_amount:
            raise ValidationError(
                f"Tiers must be contiguous: tier ending at {tier.max_amount} is followed "
                f"by a tier starting at {ordered[index + 1].min_amount}"
            )


def calculate_tiered_amount(amount: Decimal, tiers: Iterable[FeeTier]) -> Decimal:
    """
    Progressive fee: each tier's rate applies to the portion of the amount
    inside that tier. Tiers are sorted by min_amount but not otherwise
    checked, so gapped or overlapping tiers are charged as given.
    """
    tiers = sorted(tiers, key=lambda t: t.min_amount)
    if not tiers:
        return round2(Decimal('0'))

    total_fee = Decimal('0')
    remaining = to_decimal(amount)

    for tier in tiers:
        if remaining <= 0:
            break

        if tier.max_amount is None:
            amount_in_tier = remaining
        else:
            amount_in_tier = min(remaining, tier.max_amount - tier.min_amount)

        if amount_in_tier > 0:
            total_fee += amount_in_tier * tier.rate
            remaining -= amount_in_tier

    return round2(total_fee)


def resolve_basis(loan: Any, basis: Optional[BasisAmount]) -> Decimal:
    """Loan figure a percentage or tiered fee is charged on"""
    basis = BasisAmount(basis) if basis is not None else BasisAmount.PRINCIPAL
    if basis == BasisAmount.OUTSTANDING:
        return loan.outstanding_amount
    if basis == BasisAmount.TOTAL_INVOICES:
        return loan.total_invoice_amount
    return loan.total_amount


def calculate_fee_amount(fee: Any, basis_amount: Decimal) -> Decimal:
    """
    Amount charged for a fee given its resolved basis.

    A waived fee is always 0; its configuration is left untouched so that
    un-waiving restores the previous figure.
    """
    if fee.is_waived:
        return round2(Decimal('0'))

    calculation_type = FeeCalculationType(fee.calculation_type)

    if calculation_type == FeeCalculationType.FLAT:
        return round2(fee.flat_amount or Decimal('0'))

    if calculation_type == FeeCalculationType.PERCENTAGE:
        return round2(to_decimal(basis_amount) * (fee.rate or Decimal('0')))

    return calculate_tiered_amount(basis_amount, fee.tiers or [])


@dataclass
class FeeConfig(StorageRecord):
    """Fee template that loan fees are created from"""
    code: str
    name: str
    fee_type: FeeType
    calculation_type: FeeCalculationType
    default_flat_amount: Optional[Decimal] = None
    default_rate: Optional[Decimal] = None
    default_basis_amount: Optional[BasisAmount] = None
    default_tiers: List[FeeTier] = field(default_factory=list)
    is_active: bool = True

    def __post_init__(self):
        self.code = (self.code or '').upper()
        if not _FEE_CODE.match(self.code):
            raise ValidationError("Fee code must be 1-10 upper-case letters, digits or underscores")
        if not self.name:
            raise ValidationError("Fee config name is required")

        self.fee_type = FeeType(self.fee_type)
        self.calculation_type = FeeCalculationType(self.calculation_type)
        if self.default_basis_amount is not None:
            self.default_basis_amount = BasisAmount(self.default_basis_amount)

        if self.default_flat_amount is not None:
            self.default_flat_amount = to_decimal(self.default_flat_amount)
            if self.default_flat_amount < Decimal('0'):
                raise ValidationError("Default flat amount cannot be negative")
        if self.default_rate is not None:
            self.default_rate = to_decimal(self.default_rate)
            if self.default_rate < Decimal('0') or self.default_rate > Decimal('1'):
                raise ValidationError("Default rate must be between 0 and 1")

        self.default_tiers = [
            t if isinstance(t, FeeTier) else FeeTier.from_dict(t)
            for t in self.default_tiers
        ]

    def validate_defaults(self) -> None:
        """Defaults must match the calculation type"""
        if self.calculation_type == FeeCalculationType.FLAT and self.default_flat_amount is None:
            raise ValidationError("Flat fee configs require default_flat_amount")
        if self.calculation_type == FeeCalculationType.PERCENTAGE and self.default_rate is None:
            raise ValidationError("Percentage fee configs require default_rate")
        if self.calculation_type == FeeCalculationType.TIERED:
            validate_tiers(self.default_tiers)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeeConfig':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            code=data['code'],
            name=data['name'],
            fee_type=FeeType(data['fee_type']),
            calculation_type=FeeCalculationType(data['calculation_type']),
            default_flat_amount=parse_decimal(data.get('default_flat_amount')),
            default_rate=parse_decimal(data.get('default_rate')),
            default_basis_amount=data.get('default_basis_amount'),
            default_tiers=[FeeTier.from_dict(t) for t in data.get('default_tiers') or []],
            is_active=data.get('is_active', True),
        )


def calculate_fee_from_config(config: FeeConfig, loan: Any) -> Decimal:
    """Amount a template would charge on a loan with its default settings"""
    basis = resolve_basis(loan, config.default_basis_amount)

    if config.calculation_type == FeeCalculationType.FLAT:
        return round2(config.default_flat_amount or Decimal('0'))
    if config.calculation_type == FeeCalculationType.PERCENTAGE:
        return round2(basis * (config.default_rate or Decimal('0')))
    return calculate_tiered_amount(basis, config.default_tiers)


class FeeConfigRegistry:
    """Async store of fee templates"""

    def __init__(self, storage: AsyncStorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table_name = FEE_CONFIGS_TABLE

    async def create_fee_config(
        self,
        code: str,
        name: str,
        fee_type: FeeType,
        calculation_type: FeeCalculationType,
        default_flat_amount: Optional[Decimal] = None,
        default_rate: Optional[Decimal] = None,
        default_basis_amount: Optional[BasisAmount] = None,
        default_tiers: Optional[List[FeeTier]] = None,
        is_active: bool = True
    ) -> FeeConfig:
        """
        Validate and persist a new fee template.

        Raises:
            ValidationError: If defaults do not fit the calculation type, the
                tiers are not contiguous, or the code is already in use
        """
        now = self.clock.now()
        config = FeeConfig(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            fee_type=fee_type,
            calculation_type=calculation_type,
            default_flat_amount=default_flat_amount,
            default_rate=default_rate,
            default_basis_amount=default_basis_amount,
            default_tiers=list(default_tiers or []),
            is_active=is_active,
        )
        config.validate_defaults()

        existing = await self.storage.find(self.table_name, {'code': config.code})
        if existing:
            raise ValidationError(f"Fee config code {config.code} already exists")

        await self.storage.save(self.table_name, config.id, config.to_dict())
        log_action(
            logger, "info", f"Created fee config {config.code}",
            action="create_fee_config", resource=config.id
        )
        return config

    async def get_fee_config(self, config_id: str) -> FeeConfig:
        """Raises NotFoundError when the template does not exist"""
        data = await self.storage.load(self.table_name, config_id)
        if data is None:
            raise NotFoundError("fee_config", config_id)
        return FeeConfig.from_dict(data)

    async def get_fee_configs(self, config_ids: Iterable[str]) -> Dict[str, FeeConfig]:
        """Templates by id; unknown ids are left out"""
        result = {}
        for config_id in set(config_ids):
            data = await self.storage.load(self.table_name, config_id)
            if data is not None:
                result[config_id] = FeeConfig.from_dict(data)
        return result

    async def list_fee_configs(self, active_only: bool = False) -> List[FeeConfig]:
        configs = [FeeConfig.from_dict(row) for row in await self.storage.load_all(self.table_name)]
        if active_only:
            configs = [c for c in configs if c.is_active]
        return sorted(configs, key=lambda c: c.code)

    async def update_fee_config(self, config_id: str, **changes: Any) -> FeeConfig:
        """
        Apply a partial update to a template and re-validate it as on create.

        Loans keep the fees already created from the template.

        Raises:
            NotFoundError: If the template does not exist
            ValidationError: For unknown fields, defaults that no longer fit
                the calculation type, non-contiguous tiers or a duplicate code
        """
        unknown = set(changes) - UPDATABLE_FEE_CONFIG_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fee config fields: {', '.join(sorted(unknown))}")

        config = await self.get_fee_config(config_id)
        if 'default_tiers' in changes:
            changes['default_tiers'] = list(changes['default_tiers'] or [])
        updated = replace(config, updated_at=self.clock.now(), **changes)
        updated.validate_defaults()

        if updated.code != config.code:
            clashes = await self.storage.find(self.table_name, {'code': updated.code})
            if any(row['id'] != config.id for row in clashes):
                raise ValidationError(f"Fee config code {updated.code} already exists")

        await self.storage.save(self.table_name, updated.id, updated.to_dict())
        log_action(
            logger, "info", f"Updated fee config {updated.code}: {', '.join(sorted(changes))}",
            action="update_fee_config", resource=updated.id
        )
        return updated

    async def deactivate_fee_config(self, config_id: str) -> FeeConfig:
        config = await self.get_fee_config(config_id)
        config.is_active = False
        config.updated_at = self.clock.now()
        await self.storage.save(self.table_name, config.id, config.to_dict())
        return config
