"""
Shared fixtures: in-memory storage, a fixed clock and a fully wired system
"""

import pytest
import pytest_asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

from loan_pricing.api.deps import PricingSystem
from loan_pricing.async_storage import AsyncInMemoryStorage
from loan_pricing.audit import UserContext
from loan_pricing.clock import FixedClock
from loan_pricing.config import LoanPricingConfig
from loan_pricing.loans import Invoice, Loan, LoanPricing, new_id


START = date(2024, 1, 1)
MATURITY = date(2024, 4, 1)    # 91 days


def make_invoice(amount="10000.00", currency="USD", number=None, invoice_id=None) -> Invoice:
    return Invoice(
        id=invoice_id or new_id(),
        invoice_number=number or f"INV-{new_id()[:8]}",
        debtor_name="Acme Debtor",
        amount=Decimal(amount),
        currency=currency,
        issue_date=START,
        due_date=MATURITY,
    )


def make_loan(invoice_amounts=("10000.00",), currency="USD", customer_id="CUST-1",
              loan_number="LN-1", base_rate="0.05", spread="0.02", **kwargs) -> Loan:
    """Unsaved, unrecalculated loan whose principal is the sum of its invoices"""
    invoices = [make_invoice(a, currency) for a in invoice_amounts]
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Loan(
        id=kwargs.pop('id', new_id()),
        created_at=now,
        updated_at=now,
        customer_id=customer_id,
        loan_number=loan_number,
        borrower_name="Borrower Ltd",
        currency=currency,
        total_amount=sum((i.amount for i in invoices), Decimal('0')),
        start_date=kwargs.pop('start_date', START),
        maturity_date=kwargs.pop('maturity_date', MATURITY),
        pricing=LoanPricing(base_rate=Decimal(base_rate), spread=Decimal(spread)),
        invoices=invoices,
        **kwargs
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def config():
    return LoanPricingConfig(storage_type="memory", snapshot_auto_prune=False)


@pytest.fixture
def context():
    return UserContext(user_id="USER-1", user_name="Pat Analyst")


@pytest_asyncio.fixture
async def storage():
    storage = AsyncInMemoryStorage()
    yield storage
    await storage.close()


@pytest_asyncio.fixture
async def system(storage, clock, config):
    return PricingSystem(storage=storage, clock=clock, config=config)
