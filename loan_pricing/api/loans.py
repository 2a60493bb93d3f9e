"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from .deps import PricingSystem, get_system, get_user_context, http_error
from .schemas import (
    AddFeeModel, AddInvoiceModel, BatchPreviewRequest, BatchUpdateRequest, CreateLoanRequest,
    MoveInvoiceModel, PreviewRequest, PricingPatchModel, SplitRequest, UpdateFeeModel,
    UpdateInvoiceModel, UpdateLoanRequest
)
from ..audit import UserContext
from ..exceptions import LoanPricingError
from ..loans import LoanStatus, PricingStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    """Create a draft loan from its invoices"""
    try:
        loan = await system.loan_manager.create_loan(context=context, **request.to_kwargs())
        return loan.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.get("")
async def list_loans(
    customer_id: Optional[str] = None,
    status: Optional[str] = None,
    pricing_status: Optional[str] = None,
    system: PricingSystem = Depends(get_system)
):
    """List loans, optionally filtered by customer and status"""
    try:
        loans = await system.loan_manager.list_loans(
            customer_id=customer_id,
            status=LoanStatus(status) if status else None,
            pricing_status=PricingStatus(pricing_status) if pricing_status else None
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"loans": [loan.to_dict() for loan in loans], "total_count": len(loans)}


# Summary and batch routes are declared before /{loan_id} so that they match first

@router.get("/summary")
async def customer_summary(customer_id: str, system: PricingSystem = Depends(get_system)):
    """Live per-currency totals for a customer's loans"""
    try:
        summary = await system.loan_manager.customer_summary(customer_id)
    except LoanPricingError as e:
        raise http_error(e)
    return {
        "customer_id": customer_id,
        "summary": {currency: entry.to_dict() for currency, entry in summary.items()},
    }


@router.put("/batch")
async def batch_update(
    request: BatchUpdateRequest,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    """Apply independent loan updates; 207 when any item failed"""
    try:
        results = await system.loan_manager.batch_update([i.to_item() for i in request.items], context)
    except LoanPricingError as e:
        raise http_error(e)

    body = {
        "results": [r.to_dict() for r in results],
        "succeeded": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
    }
    if body["failed"]:
        return JSONResponse(status_code=status.HTTP_207_MULTI_STATUS, content=body)
    return body


@router.post("/batch-preview-pricing")
async def batch_preview_pricing(
    request: BatchPreviewRequest,
    system: PricingSystem = Depends(get_system)
):
    """Pricing previews for many loans"""
    try:
        results = await system.loan_manager.batch_preview([i.to_item() for i in request.items])
    except LoanPricingError as e:
        raise http_error(e)
    return {"results": [r.to_dict() for r in results]}


@router.get("/{loan_id}")
async def get_loan(loan_id: str, system: PricingSystem = Depends(get_system)):
    try:
        loan = await system.loan_manager.get_loan(loan_id)
        return loan.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.put("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    """Update pricing, dates or status"""
    try:
        loan = await system.loan_manager.update_loan(loan_id, request.to_update(), context)
        return loan.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


# Previews

@router.post("/{loan_id}/preview-pricing")
async def preview_pricing(
    loan_id: str,
    request: PricingPatchModel,
    system: PricingSystem = Depends(get_system)
):
    """Pricing result for hypothetical inputs; nothing is saved"""
    try:
        preview = await system.loan_manager.preview_pricing(loan_id, request.to_patch())
        return preview.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.post("/{loan_id}/preview")
async def preview_full(
    loan_id: str,
    request: PreviewRequest,
    system: PricingSystem = Depends(get_system)
):
    """Pricing and pending fee changes combined, against the current totals"""
    try:
        preview = await system.loan_manager.preview_full(
            loan_id,
            request.patch.to_patch() if request.patch else None,
            request.fee_changes.to_changeset() if request.fee_changes else None
        )
        return preview.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


# Fees

@router.post("/{loan_id}/fees", status_code=status.HTTP_201_CREATED)
async def add_fee(
    loan_id: str,
    request: AddFeeModel,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    try:
        loan = await system.loan_manager.add_fee(loan_id, request.to_request(), context)
        return loan.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.put("/{loan_id}/fees/{fee_id}")
async def update_fee(
    loan_id: str,
    fee_id: str,
    request: UpdateFeeModel,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    try:
        loan = await system.loan_manager.update_fee(loan_id, fee_id, request.to_update(), context)
        return loan.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.delete("/{loan_id}/fees/{fee_id}")
async def remove_fee(
    loan_id: str,
    fee_id: str,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    try:
        loan = await system.loan_manager.remove_fee(loan_id, fee_id, context)
        return loan.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


# Invoices

@router.post("/{loan_id}/invoices", status_code=status.HTTP_201_CREATED)
async def add_invoice(
    loan_id: str,
    request: AddInvoiceModel,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    try:
        loan = await system.loan_manager.add_invoice(loan_id, request.to_new_invoice(), context)
        return loan.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.put("/{loan_id}/invoices/{invoice_id}")
async def update_invoice(
    loan_id: str,
    invoice_id: str,
    request: UpdateInvoiceModel,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    try:
        loan = await system.loan_manager.update_invoice(loan_id, invoice_id, request.to_update(), context)
        return loan.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.delete("/{loan_id}/invoices/{invoice_id}")
async def remove_invoice(
    loan_id: str,
    invoice_id: str,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    try:
        loan = await system.loan_manager.remove_invoice(loan_id, invoice_id, context)
        return loan.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.post("/{loan_id}/invoices/{invoice_id}/move")
async def move_invoice(
    loan_id: str,
    invoice_id: str,
    request: MoveInvoiceModel,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    """Move an invoice to another loan of the same currency"""
    try:
        source, target = await system.loan_manager.move_invoice(
            loan_id, invoice_id, request.target_loan_id, context
        )
        return {"source": source.to_dict(), "target": target.to_dict()}
    except LoanPricingError as e:
        raise http_error(e)


# Splitting

@router.post("/{loan_id}/split", status_code=status.HTTP_201_CREATED)
async def split_loan(
    loan_id: str,
    request: SplitRequest,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    """Split a loan into child loans by invoice"""
    try:
        children = await system.loan_manager.split_loan(
            loan_id, [p.to_partition() for p in request.partitions], context
        )
        return {"parent_loan_id": loan_id, "loans": [child.to_dict() for child in children]}
    except LoanPricingError as e:
        raise http_error(e)


# Audit

@router.get("/{loan_id}/audit")
async def get_loan_audit(
    loan_id: str,
    limit: int = 50,
    offset: int = 0,
    field_name: Optional[str] = None,
    system: PricingSystem = Depends(get_system)
):
    """Change history of a loan, newest first"""
    if limit < 0 or offset < 0:
        raise HTTPException(status_code=400, detail="limit and offset must not be negative")
    try:
        await system.loan_manager.get_loan(loan_id)
    except LoanPricingError as e:
        raise http_error(e)

    events = await system.audit_trail.get_loan_history(loan_id, limit, offset, field_name)
    return {"loan_id": loan_id, "events": [event.to_dict() for event in events]}
