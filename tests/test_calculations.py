"""
Test suite for calculations module

Tests the loan recalculator (derived fields, FX conversion, idempotence)
and the preview engine (pricing what-ifs and pending fee changes).
"""

import pytest
from datetime import date
from decimal import Decimal

from loan_pricing.calculations import (
    FeeAmountUpdate, FeeChangeset, LoanRecalculator, PreviewEngine, PricingPatch, net_proceeds
)
from loan_pricing.currency import FxResolver
from loan_pricing.exceptions import ValidationError
from loan_pricing.fees import BasisAmount, FeeCalculationType, FeeConfigRegistry, FeeType
from loan_pricing.loans import Fee
from loan_pricing.interest import DayCountConvention

from conftest import make_invoice, make_loan


def flat_fee(amount="500.00", fee_id="FEE-1"):
    return Fee(id=fee_id, fee_config_id=f"CFG-{fee_id}", code="ARR", name="Arrangement",
               fee_type=FeeType.ARRANGEMENT, calculation_type=FeeCalculationType.FLAT,
               currency="USD", flat_amount=Decimal(amount))


@pytest.fixture
def fx_resolver(storage, clock):
    return FxResolver(storage, clock)


@pytest.fixture
def recalculator(fx_resolver, clock):
    return LoanRecalculator(fx_resolver, clock)


class TestNetProceeds:
    """Test the net proceeds formula"""

    def test_principal_less_interest_and_fees(self):
        assert net_proceeds(Decimal('100000'), Decimal('1769.44'), Decimal('500')) == Decimal('97730.56')


class TestLoanRecalculator:
    """Test derivation of every computed loan field"""

    @pytest.mark.asyncio
    async def test_derived_fields(self, recalculator):
        loan = make_loan(("100000.00",))
        loan.add_fee(flat_fee())

        await recalculator.recalculate(loan)

        assert loan.pricing.effective_rate == Decimal('0.0700')
        assert loan.total_invoice_amount == Decimal('100000.00')
        assert loan.fees[0].calculated_amount == Decimal('500.00')
        assert loan.total_fees == Decimal('500.00')
        assert loan.interest_amount == Decimal('1769.44')
        assert loan.net_proceeds == Decimal('97730.56')

    @pytest.mark.asyncio
    async def test_idempotent(self, recalculator):
        loan = make_loan(("60000.00", "40000.00"))
        loan.add_fee(flat_fee())
        await recalculator.recalculate(loan)
        first = loan.to_dict()

        await recalculator.recalculate(loan)
        assert loan.to_dict() == first

    @pytest.mark.asyncio
    async def test_invoices_converted_to_loan_currency(self, recalculator, fx_resolver):
        await fx_resolver.add_rate("EUR", "USD", Decimal('1.10'), date(2023, 12, 1))
        loan = make_loan(("10000.00",))
        loan.add_invoice(make_invoice("1000.00", currency="EUR"))

        await recalculator.recalculate(loan)
        assert loan.total_invoice_amount == Decimal('11100.00')

    @pytest.mark.asyncio
    async def test_missing_fx_rate_converts_one_to_one(self, recalculator):
        loan = make_loan(("10000.00",))
        loan.add_invoice(make_invoice("1000.00", currency="GBP"))

        await recalculator.recalculate(loan)
        assert loan.total_invoice_amount == Decimal('11000.00')

    @pytest.mark.asyncio
    async def test_percentage_fee_on_converted_invoices(self, recalculator, fx_resolver):
        await fx_resolver.add_rate("USD", "EUR", Decimal('0.5'), date(2023, 12, 1))
        loan = make_loan(("10000.00",))
        loan.add_invoice(make_invoice("1000.00", currency="EUR"))
        loan.add_fee(Fee(id="PCT", fee_config_id="CFG-PCT", code="COM", name="Commitment",
                         fee_type=FeeType.COMMITMENT, calculation_type=FeeCalculationType.PERCENTAGE,
                         currency="USD", rate=Decimal('0.01'), basis_amount=BasisAmount.TOTAL_INVOICES))

        await recalculator.recalculate(loan)
        # 10000 + 1000 EUR at the inverse of 0.5
        assert loan.total_invoice_amount == Decimal('12000.00')
        assert loan.total_fees == Decimal('120.00')

    @pytest.mark.asyncio
    async def test_waived_fee_excluded_from_totals(self, recalculator):
        loan = make_loan(("100000.00",))
        loan.add_fee(flat_fee("500.00", "A"))
        waived = flat_fee("300.00", "B")
        waived.is_waived = True
        loan.add_fee(waived)

        await recalculator.recalculate(loan)
        assert loan.total_fees == Decimal('500.00')

    @pytest.mark.asyncio
    async def test_recalculate_many(self, recalculator):
        loans = [make_loan(("1000.00",), loan_number="A"), make_loan(("2000.00",), loan_number="B")]
        await recalculator.recalculate_many(loans)
        assert [loan.total_invoice_amount for loan in loans] == [Decimal('1000.00'), Decimal('2000.00')]


class TestPreviewPricing:
    """Test what-if pricing"""

    @pytest.mark.asyncio
    async def test_patched_spread(self, recalculator):
        loan = await recalculator.recalculate(make_loan(("100000.00",), fees=[flat_fee()]))
        before = loan.to_dict()

        preview = PreviewEngine().preview_pricing(loan, PricingPatch(spread=Decimal('0.03')))

        assert preview.effective_rate == Decimal('0.0800')
        assert preview.interest_amount == Decimal('2022.22')
        assert preview.net_proceeds == Decimal('97477.78')
        assert preview.total_fees == Decimal('500.00')
        assert loan.to_dict() == before

    @pytest.mark.asyncio
    async def test_empty_patch_matches_stored_figures(self, recalculator):
        loan = await recalculator.recalculate(make_loan(("100000.00",)))
        preview = PreviewEngine().preview_pricing(loan, PricingPatch())
        assert preview.effective_rate == loan.pricing.effective_rate
        assert preview.interest_amount == loan.interest_amount
        assert preview.net_proceeds == loan.net_proceeds

    @pytest.mark.asyncio
    async def test_unparseable_date_keeps_stored_interest(self, recalculator):
        loan = await recalculator.recalculate(make_loan(("100000.00",)))
        preview = PreviewEngine().preview_pricing(
            loan, PricingPatch(spread=Decimal('0.03'), maturity_date="not-a-date")
        )
        assert preview.effective_rate == Decimal('0.0800')
        assert preview.interest_amount == Decimal('1769.44')

    @pytest.mark.asyncio
    async def test_string_dates_and_convention(self, recalculator):
        loan = await recalculator.recalculate(make_loan(("36000.00",), base_rate="0.08", spread="0.02"))
        preview = PreviewEngine().preview_pricing(loan, PricingPatch(
            day_count_convention=DayCountConvention.THIRTY_360,
            start_date="2024-01-01",
            maturity_date="2024-07-01T00:00:00",
        ))
        assert preview.interest_amount == Decimal('1800.00')

    @pytest.mark.asyncio
    async def test_to_dict_uses_strings(self, recalculator):
        loan = await recalculator.recalculate(make_loan(("100000.00",)))
        data = PreviewEngine().preview_pricing(loan, PricingPatch()).to_dict()
        assert data['effective_rate'] == "0.0700"
        assert data['interest_amount'] == "1769.44"


class TestPreviewFull:
    """Test combined pricing and fee change previews"""

    @pytest.fixture
    def registry(self, storage, clock):
        return FeeConfigRegistry(storage, clock)

    @pytest.mark.asyncio
    async def test_fee_changes(self, recalculator, registry):
        config = await registry.create_fee_config(
            "FAC", "Facility", FeeType.FACILITY, FeeCalculationType.PERCENTAGE,
            default_rate=Decimal('0.01')
        )
        loan = await recalculator.recalculate(
            make_loan(("100000.00",), fees=[flat_fee("500.00", "A"), flat_fee("300.00", "B")])
        )
        assert loan.total_fees == Decimal('800.00')

        changes = FeeChangeset(
            adds=[config.id, "unknown-config"],
            updates=[FeeAmountUpdate("B", Decimal('100.00')), FeeAmountUpdate("missing", Decimal('9'))],
            deletes=["A", "missing"],
        )
        preview = await PreviewEngine(registry).preview_full(loan, None, changes)

        # 800 - 500 (delete A) - 300 + 100 (update B) + 1000 (1% of 100000)
        assert preview.total_fees == Decimal('1100.00')
        assert preview.original_total_fees == Decimal('800.00')
        assert preview.net_proceeds == Decimal('100000.00') - loan.interest_amount - Decimal('1100.00')
        assert preview.original_net_proceeds == loan.net_proceeds
        assert len(loan.fees) == 2

    @pytest.mark.asyncio
    async def test_pricing_and_fees_together(self, recalculator, registry):
        loan = await recalculator.recalculate(make_loan(("100000.00",), fees=[flat_fee()]))
        preview = await PreviewEngine(registry).preview_full(
            loan, PricingPatch(spread=Decimal('0.03')), FeeChangeset(deletes=["FEE-1"])
        )
        assert preview.effective_rate == Decimal('0.0800')
        assert preview.interest_amount == Decimal('2022.22')
        assert preview.total_fees == Decimal('0.00')
        assert preview.net_proceeds == Decimal('97977.78')

    @pytest.mark.asyncio
    async def test_adds_without_registry_rejected(self, recalculator):
        loan = await recalculator.recalculate(make_loan(("100000.00",)))
        with pytest.raises(ValidationError):
            await PreviewEngine().preview_full(loan, None, FeeChangeset(adds=["CFG"]))

    @pytest.mark.asyncio
    async def test_no_changes_returns_current_figures(self, recalculator):
        loan = await recalculator.recalculate(make_loan(("100000.00",), fees=[flat_fee()]))
        preview = await PreviewEngine().preview_full(loan)
        assert preview.total_fees == loan.total_fees
        assert preview.net_proceeds == loan.net_proceeds
        assert preview.interest_amount == loan.interest_amount
