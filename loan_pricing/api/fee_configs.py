"""
Fee template endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import PricingSystem, get_system, http_error
from .schemas import CreateFeeConfigRequest, UpdateFeeConfigRequest
from ..exceptions import LoanPricingError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_fee_config(
    request: CreateFeeConfigRequest,
    system: PricingSystem = Depends(get_system)
):
    """Create a fee template; tiers are validated here"""
    try:
        config = await system.fee_registry.create_fee_config(**request.to_kwargs())
        return config.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.get("")
async def list_fee_configs(active_only: bool = False, system: PricingSystem = Depends(get_system)):
    configs = await system.fee_registry.list_fee_configs(active_only)
    return {"fee_configs": [c.to_dict() for c in configs], "total_count": len(configs)}


@router.get("/{config_id}")
async def get_fee_config(config_id: str, system: PricingSystem = Depends(get_system)):
    try:
        config = await system.fee_registry.get_fee_config(config_id)
        return config.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.put("/{config_id}")
async def update_fee_config(
    config_id: str,
    request: UpdateFeeConfigRequest,
    system: PricingSystem = Depends(get_system)
):
    """Partial update, validated as on create"""
    try:
        config = await system.fee_registry.update_fee_config(config_id, **request.to_changes())
        return config.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.post("/{config_id}/deactivate")
async def deactivate_fee_config(config_id: str, system: PricingSystem = Depends(get_system)):
    """Stop the template from being added to loans; existing fees are kept"""
    try:
        config = await system.fee_registry.deactivate_fee_config(config_id)
        return config.to_dict()
    except LoanPricingError as e:
        raise http_error(e)
