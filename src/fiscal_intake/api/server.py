"""FastAPI application exposing the intake pipelines."""

from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from ..config import Settings
from ..core.entry_note import EntryNoteState
from ..core.errors import (
    BlockedEditError,
    FiscalIntakeError,
    InvalidTransitionError,
    ParseError,
    PostingBlockedError,
    ReconciliationError,
    StoreError,
)
from ..core.models import EntryNoteItem
from ..core.ofx import OFXImportReport
from ..core.pipeline import Processor


ERROR_STATUS = (
    (ParseError, 400),
    (BlockedEditError, 409),
    (InvalidTransitionError, 409),
    (ReconciliationError, 409),
    (PostingBlockedError, 422),
    (StoreError, 500),
)


def _note_payload(draft_id: str, state: EntryNoteState) -> Dict[str, Any]:
    note = state.note
    return jsonable_encoder(
        {
            "draft_id": draft_id,
            "status": note.status.value,
            "number": note.number,
            "series": note.series,
            "supplier_id": note.supplier_id,
            "totals": asdict(note.totals),
            "items": [asdict(item) for item in note.items],
            "installments": [asdict(installment) for installment in note.installments],
            "field_origins": {name: origin.value for name, origin in note.field_origins.items()},
            "pending": len(state.pending_items()),
        }
    )


def _draft_item(pipeline: Processor, draft_id: str, index: int) -> Tuple[EntryNoteState, EntryNoteItem]:
    state = pipeline.draft(draft_id)
    if not 0 <= index < len(state.items):
        raise HTTPException(status_code=404, detail="Item não encontrado")
    return state, state.items[index]


def _ofx_payload(report_id: str, report: OFXImportReport) -> Dict[str, Any]:
    data = asdict(report)
    data["report_id"] = report_id
    return jsonable_encoder(data)


async def _read_upload(upload: UploadFile) -> str:
    content = await upload.read()
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def create_app(settings: Settings, processor: Optional[Processor] = None) -> FastAPI:
    app = FastAPI(title="Fiscal Intake")
    processor = processor or Processor(settings)
    ofx_reports: Dict[str, OFXImportReport] = {}

    class ItemChanges(BaseModel):
        changes: Dict[str, Any]

    class HeaderChange(BaseModel):
        field: str
        value: Any = None

    class LinkRequest(BaseModel):
        product_id: str
        user_id: Optional[str] = None

    class CreateProductRequest(BaseModel):
        name: Optional[str] = None
        internal_code: Optional[str] = None
        user_id: Optional[str] = None

    class PostRequest(BaseModel):
        user_id: Optional[str] = None
        confirm_warnings: bool = False

    class OFXSaveRequest(BaseModel):
        account_id: str
        user_id: Optional[str] = None

    def get_processor() -> Processor:
        return processor

    def company(company_id: Optional[str] = None) -> str:
        return company_id or settings.api.default_company_id

    @app.exception_handler(FiscalIntakeError)
    async def handle_domain_error(request: Request, exc: FiscalIntakeError) -> JSONResponse:
        status = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
        detail: Dict[str, Any] = {"detail": exc.user_message() if isinstance(exc, StoreError) else str(exc)}
        if isinstance(exc, PostingBlockedError):
            detail["errors"] = exc.check.errors
            detail["warnings"] = exc.check.warnings
        return JSONResponse(status_code=status, content=detail)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # XML
    # ------------------------------------------------------------------
    @app.post("/xml/validate")
    async def validate_xml(
        file: UploadFile = File(...),
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> dict:
        invoice, report = await pipeline.validate_xml(await _read_upload(file), company_id)
        return {
            "document_kind": invoice.document_kind.value,
            "number": invoice.number,
            "series": invoice.series,
            "supplier": invoice.supplier.legal_name,
            "grand_total": invoice.totals.grand_total,
            "validation": report.to_dict(),
        }

    @app.post("/xml/import")
    async def import_xml(
        file: UploadFile = File(...),
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> dict:
        result = await pipeline.import_xml(await _read_upload(file), company_id)
        if result.state is None:
            return JSONResponse(status_code=422, content={"validation": jsonable_encoder(result.report.to_dict())})
        payload = _note_payload(result.draft_id, result.state)
        payload["validation"] = jsonable_encoder(result.report.to_dict())
        payload["suggestions"] = jsonable_encoder(
            {str(index): [asdict(s) for s in suggestions] for index, suggestions in result.suggestions.items()}
        )
        return payload

    @app.post("/xml/register")
    async def register_xml(
        file: UploadFile = File(...),
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> dict:
        return jsonable_encoder(await pipeline.import_xml_standalone(await _read_upload(file), company_id))

    # ------------------------------------------------------------------
    # Entry note drafts
    # ------------------------------------------------------------------
    @app.get("/drafts/{draft_id}")
    async def get_draft(draft_id: str, pipeline: Processor = Depends(get_processor)) -> dict:
        return _note_payload(draft_id, pipeline.draft(draft_id))

    @app.patch("/drafts/{draft_id}/header")
    async def update_header(draft_id: str, request: HeaderChange, pipeline: Processor = Depends(get_processor)) -> dict:
        state = pipeline.draft(draft_id)
        try:
            state.set_header(request.field, request.value)
        except AttributeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _note_payload(draft_id, state)

    @app.patch("/drafts/{draft_id}/items/{index}")
    async def update_item(draft_id: str, index: int, request: ItemChanges, pipeline: Processor = Depends(get_processor)) -> dict:
        state, _ = _draft_item(pipeline, draft_id, index)
        try:
            state.update_item(index, **request.changes)
        except AttributeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _note_payload(draft_id, state)

    @app.get("/drafts/{draft_id}/items/{index}/suggestions")
    async def suggestions(
        draft_id: str,
        index: int,
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> list:
        _, item = _draft_item(pipeline, draft_id, index)
        found = await pipeline.linker.suggest(company_id, item)
        return jsonable_encoder([asdict(suggestion) for suggestion in found])

    @app.post("/drafts/{draft_id}/items/{index}/link")
    async def link_item(
        draft_id: str,
        index: int,
        request: LinkRequest,
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> dict:
        state, item = _draft_item(pipeline, draft_id, index)
        await pipeline.linker.link(company_id, item, request.product_id, request.user_id)
        return _note_payload(draft_id, state)

    @app.post("/drafts/{draft_id}/items/{index}/create-product")
    async def create_product(
        draft_id: str,
        index: int,
        request: CreateProductRequest,
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> dict:
        state, item = _draft_item(pipeline, draft_id, index)
        await pipeline.linker.create_and_link(
            company_id,
            item,
            name=request.name,
            internal_code=request.internal_code,
            user_id=request.user_id,
        )
        return _note_payload(draft_id, state)

    @app.post("/drafts/{draft_id}/items/{index}/ignore")
    async def ignore_item(
        draft_id: str,
        index: int,
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> dict:
        state, item = _draft_item(pipeline, draft_id, index)
        await pipeline.linker.ignore(company_id, item)
        return _note_payload(draft_id, state)

    @app.post("/drafts/{draft_id}/post")
    async def post_draft(draft_id: str, request: PostRequest, pipeline: Processor = Depends(get_processor)) -> dict:
        result = await pipeline.post(draft_id, request.user_id, confirm_warnings=request.confirm_warnings)
        return asdict(result)

    @app.get("/notes/{note_id}/can-delete")
    async def can_delete(note_id: str, pipeline: Processor = Depends(get_processor)) -> dict:
        return asdict(await pipeline.posting.can_delete(note_id))

    @app.delete("/notes/{note_id}")
    async def delete_note(note_id: str, user_id: Optional[str] = None, pipeline: Processor = Depends(get_processor)) -> dict:
        await pipeline.posting.delete(note_id, user_id)
        return {"status": "deleted"}

    # ------------------------------------------------------------------
    # OFX
    # ------------------------------------------------------------------
    @app.post("/ofx/import")
    async def import_ofx(
        file: UploadFile = File(...),
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> dict:
        report = await pipeline.import_ofx(await _read_upload(file), company_id)
        report_id = f"{len(ofx_reports) + 1}"
        ofx_reports[report_id] = report
        return _ofx_payload(report_id, report)

    def get_report(report_id: str) -> OFXImportReport:
        report = ofx_reports.get(report_id)
        if report is None:
            raise HTTPException(status_code=404, detail="Relatório OFX não encontrado")
        return report

    @app.post("/ofx/{report_id}/save")
    async def save_ofx(
        report_id: str,
        request: OFXSaveRequest,
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> dict:
        saved = await pipeline.ofx.save_transactions(get_report(report_id), request.account_id, company_id, request.user_id)
        return asdict(saved)

    @app.post("/ofx/{report_id}/reconcile/{fitid}")
    async def reconcile_ofx(
        report_id: str,
        fitid: str,
        request: OFXSaveRequest,
        company_id: str = Depends(company),
        pipeline: Processor = Depends(get_processor),
    ) -> dict:
        report = get_report(report_id)
        transaction = next((t for t in report.transactions if t.fitid == fitid), None)
        if transaction is None:
            raise HTTPException(status_code=404, detail="Transação não encontrada")
        await pipeline.ofx.reconcile(transaction, request.account_id, company_id, request.user_id)
        return jsonable_encoder(asdict(transaction))

    @app.get("/ofx/{report_id}/export")
    async def export_ofx(report_id: str, account_id: str, pipeline: Processor = Depends(get_processor)):
        _, csv_path = pipeline.export_ofx_report(get_report(report_id), account_id)
        path = Path(csv_path)
        return FileResponse(path, filename=path.name, media_type="text/csv")

    return app


__all__ = ["create_app"]
