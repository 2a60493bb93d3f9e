"""
Loan Pricing Engine

Trade-finance loan pricing, fee assessment and point-in-time portfolio
snapshots. All financial math uses Decimal with explicit rounding rules.
"""

__version__ = "1.0.0"
