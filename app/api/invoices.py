"""
/api/v1/invoices endpoint.
Single ad-hoc invoices, dispatched through the same submission queue as
batches but ahead of them.
"""

from fastapi import APIRouter, Depends, Response, status

from app.dependencies import Principal, get_pipeline, get_principal, verify_api_key
from app.models.enums import SubmissionResult
from app.pipeline.orchestrator import InvoicePipeline
from app.schemas.batches import SingleInvoiceRequest, SingleInvoiceResponse

router = APIRouter(prefix="/api/v1/invoices", tags=["invoices"], dependencies=[Depends(verify_api_key)])


@router.post("", response_model=SingleInvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    body: SingleInvoiceRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
):
    """Allocate a folio and stamp one invoice. Waits for the provider's answer."""
    result = await pipeline.submit_single(principal.tenant_id, principal.owner_id, body)
    if result.result != SubmissionResult.SUBMITTED.value:
        # Folio is consumed either way; report the provider failure.
        response.status_code = status.HTTP_502_BAD_GATEWAY
    return result
