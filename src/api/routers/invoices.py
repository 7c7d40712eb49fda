from fastapi import APIRouter, Depends
from ..deps import (
    ApproveRequest,
    CountResponse,
    RejectRequest,
    VendorCreateRequest,
    VendorStatusRequest,
    VendorUpdateRequest,
    pipeline,
)
from ...models.invoice import Invoice, InvoiceStatus, Vendor, VendorStatus
from ...services.runtime import Pipeline

router = APIRouter(tags=["invoices"])


@router.get("/invoices", response_model=list[Invoice])
async def list_invoices(status: InvoiceStatus | None = None, p: Pipeline = Depends(pipeline)):
    return p.invoices.list_invoices(status)


@router.get("/invoices/count", response_model=CountResponse)
async def count_invoices(status: InvoiceStatus | None = None, p: Pipeline = Depends(pipeline)):
    return CountResponse(count=p.invoices.count_invoices(status))


@router.get("/invoices/{invoice_id}", response_model=Invoice)
async def get_invoice(invoice_id: str, p: Pipeline = Depends(pipeline)):
    return p.invoices.get_invoice(invoice_id)


@router.post("/invoices/{invoice_id}/approve", response_model=Invoice)
async def approve_invoice(invoice_id: str, req: ApproveRequest, p: Pipeline = Depends(pipeline)):
    return p.invoices.approve(invoice_id, req.approved_by)


@router.post("/invoices/{invoice_id}/reject", response_model=Invoice)
async def reject_invoice(invoice_id: str, req: RejectRequest, p: Pipeline = Depends(pipeline)):
    return p.invoices.reject(invoice_id, req.rejected_by, req.reason)


@router.get("/vendors", response_model=list[Vendor])
async def list_vendors(
    q: str | None = None,
    status: VendorStatus | None = None,
    p: Pipeline = Depends(pipeline),
):
    """List vendors, optionally filtered by a case-insensitive name fragment"""
    if q:
        return p.vendors.search_vendors(q)
    return p.vendors.list_vendors(status)


@router.post("/vendors", response_model=Vendor, status_code=201)
async def create_vendor(req: VendorCreateRequest, p: Pipeline = Depends(pipeline)):
    """Register a vendor; 409 when the name is already taken"""
    return p.vendors.create(req.name, email=req.email, phone=req.phone, address=req.address)


@router.get("/vendors/count", response_model=CountResponse)
async def count_vendors(status: VendorStatus | None = None, p: Pipeline = Depends(pipeline)):
    return CountResponse(count=p.vendors.count_vendors(status))


@router.get("/vendors/{vendor_id}", response_model=Vendor)
async def get_vendor(vendor_id: str, p: Pipeline = Depends(pipeline)):
    return p.vendors.get_vendor(vendor_id)


@router.put("/vendors/{vendor_id}", response_model=Vendor)
async def update_vendor(vendor_id: str, req: VendorUpdateRequest, p: Pipeline = Depends(pipeline)):
    return p.vendors.update(vendor_id, email=req.email, phone=req.phone, address=req.address)


@router.patch("/vendors/{vendor_id}/status", response_model=Vendor)
async def set_vendor_status(vendor_id: str, req: VendorStatusRequest, p: Pipeline = Depends(pipeline)):
    return p.vendors.set_status(vendor_id, req.status)
