from fastapi import APIRouter, Depends, File, Form, UploadFile
from ..deps import (
    BatchResponse,
    ChatRequest,
    ChatResponse,
    DocumentResponse,
    pipeline,
)
from ...models.batch import Analysis, BatchStatistics, BatchStatus
from ...models.invoice import Invoice
from ...services.batch_service import UploadedFile
from ...services.runtime import Pipeline

router = APIRouter(tags=["batches"])


@router.post("/batches", response_model=BatchResponse, status_code=201)
async def create_batch(
    name: str = Form(...),
    description: str | None = Form(None),
    created_by: str | None = Form(None),
    files: list[UploadFile] = File(...),
    p: Pipeline = Depends(pipeline),
):
    """
    Upload a batch of documents (multipart/form-data) and start processing.

    Example:
        curl -F name="September invoices" -F files=@inv1.pdf -F files=@inv2.png \\
             http://127.0.0.1:8000/batches
    """
    uploads = [
        UploadedFile(
            file_name=f.filename or "",
            content_type=f.content_type or "application/octet-stream",
            data=await f.read(),
        )
        for f in files
    ]
    batch = await p.batches.create_batch(name, uploads, description=description, created_by=created_by)
    return BatchResponse.from_batch(batch)


@router.get("/batches", response_model=list[BatchResponse])
async def list_batches(status: BatchStatus | None = None, p: Pipeline = Depends(pipeline)):
    return [BatchResponse.from_batch(b) for b in p.batches.list_batches(status)]


@router.get("/batches/statistics", response_model=BatchStatistics)
async def batch_statistics(p: Pipeline = Depends(pipeline)):
    return p.batches.statistics()


@router.get("/batches/{batch_id}", response_model=BatchResponse)
async def get_batch(batch_id: str, p: Pipeline = Depends(pipeline)):
    return BatchResponse.from_batch(p.batches.get_batch(batch_id))


@router.delete("/batches/{batch_id}", status_code=204)
async def delete_batch(batch_id: str, p: Pipeline = Depends(pipeline)):
    await p.batches.delete_batch(batch_id)


@router.post("/batches/{batch_id}/cancel", response_model=BatchResponse)
async def cancel_batch(batch_id: str, p: Pipeline = Depends(pipeline)):
    return BatchResponse.from_batch(await p.batches.cancel_batch(batch_id))


@router.get("/batches/{batch_id}/documents", response_model=list[DocumentResponse])
async def list_documents(batch_id: str, p: Pipeline = Depends(pipeline)):
    return [DocumentResponse.from_document(d) for d in p.batches.list_documents(batch_id)]


@router.get("/batches/{batch_id}/invoices", response_model=list[Invoice])
async def list_batch_invoices(batch_id: str, p: Pipeline = Depends(pipeline)):
    return p.batches.list_invoices(batch_id)


@router.get("/batches/{batch_id}/analysis", response_model=Analysis)
async def get_analysis(batch_id: str, p: Pipeline = Depends(pipeline)):
    return p.batches.get_analysis(batch_id)


@router.post("/batches/{batch_id}/chat", response_model=ChatResponse)
async def chat(batch_id: str, req: ChatRequest, p: Pipeline = Depends(pipeline)):
    """Ask a question about a batch; answered from a digest of its documents"""
    answer = await p.batches.chat(batch_id, req.message, invoice_id=req.invoice_id)
    return ChatResponse(batch_id=batch_id, answer=answer)


@router.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: str, p: Pipeline = Depends(pipeline)):
    return DocumentResponse.from_document(p.batches.get_document(document_id))


@router.post("/documents/{document_id}/reprocess", response_model=DocumentResponse, status_code=202)
async def reprocess_document(document_id: str, p: Pipeline = Depends(pipeline)):
    return DocumentResponse.from_document(await p.batches.reprocess_document(document_id))
