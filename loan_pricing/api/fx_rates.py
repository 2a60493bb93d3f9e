"""
FX rate endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import PricingSystem, get_system, http_error
from .schemas import CreateFxRateRequest, parse_iso_date
from ..exceptions import LoanPricingError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_fx_rate(
    request: CreateFxRateRequest,
    system: PricingSystem = Depends(get_system)
):
    try:
        fx_rate = await system.fx_resolver.add_rate(**request.to_kwargs())
        return fx_rate.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.get("")
async def list_fx_rates(
    from_currency: str,
    to_currency: str,
    system: PricingSystem = Depends(get_system)
):
    rates = await system.fx_resolver.list_rates(from_currency, to_currency)
    return {"rates": [r.to_dict() for r in rates]}


@router.get("/resolve")
async def resolve_fx_rate(
    from_currency: str,
    to_currency: str,
    as_of: Optional[str] = None,
    system: PricingSystem = Depends(get_system)
):
    """Conversion factor and how it was found; fallback quotes are flagged as degraded"""
    try:
        quote = await system.fx_resolver.resolve(
            from_currency, to_currency, parse_iso_date(as_of, "as_of")
        )
    except LoanPricingError as e:
        raise http_error(e)
    return {
        "from_currency": quote.from_currency,
        "to_currency": quote.to_currency,
        "rate": str(quote.rate),
        "method": quote.method.value,
        "as_of": quote.as_of.isoformat(),
        "degraded": quote.degraded,
    }
