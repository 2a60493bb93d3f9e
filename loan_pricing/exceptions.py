"""
Error kinds raised by the pricing engine and its services.
"""


class LoanPricingError(Exception):
    """Base exception for all loan pricing errors."""


class NotFoundError(LoanPricingError):
    """Raised when a loan, fee, invoice, fee config or snapshot is missing."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")


class LockedLoanError(LoanPricingError):
    """Raised when a frozen field is mutated on a loan with locked pricing."""


class InvalidPartitionError(LoanPricingError):
    """Raised when split partitions do not cover the invoices disjointly."""


class ValidationError(LoanPricingError, ValueError):
    """Raised for malformed input or out-of-range rates and amounts."""
