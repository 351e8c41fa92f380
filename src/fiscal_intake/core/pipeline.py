"""High level orchestration of the XML and OFX import pipelines."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..config import Settings
from .entry_note import EntryNoteState
from .errors import FiscalIntakeError
from .linker import ProductLinkResolver
from .mapper import FiscalMapper, SupplierResolver, build_entry_payload
from .models import LinkStatus, LinkSuggestion, ParsedInvoice, ValidationReport
from .ofx import OFXImportReport, OFXParser, OFXReconciler
from .parser import CatalogLoader, parse_invoice
from .posting import PostingResult, PostingService
from .sefaz import CONFIRMACAO, MANIFEST_EVENTS, ManifestResult, SefazGateway
from .store import InMemoryStore, Store
from .utils import dump_json, now_timestamp
from .validator import ENTRY_NOTES, INVOICE_HEADERS, FiscalValidator


LOGGER = logging.getLogger(__name__)


@dataclass
class ImportResult:
    invoice: ParsedInvoice
    report: ValidationReport
    draft_id: Optional[str] = None
    state: Optional[EntryNoteState] = None
    suggestions: Dict[int, List[LinkSuggestion]] = field(default_factory=dict)

    @property
    def pending_count(self) -> int:
        if self.state is None:
            return 0
        return ProductLinkResolver.pending_count(self.state.items)


class Processor:
    """Coordinates parsing, validation, mapping, linking and posting."""

    def __init__(self, settings: Settings, store: Optional[Store] = None, sefaz: Optional[SefazGateway] = None) -> None:
        self.settings = settings
        self.settings.ensure_folders()
        self.store = store if store is not None else InMemoryStore(settings.paths.store_file)
        self.linker = ProductLinkResolver(
            self.store,
            suggestion_limit=settings.linking.suggestion_limit,
            min_coverage=settings.linking.min_coverage,
            strong_similarity=settings.linking.strong_similarity,
        )
        self.suppliers = SupplierResolver(self.store)
        self.mapper = FiscalMapper(self.store, self.linker, self.suppliers)
        self.posting = PostingService(
            self.store,
            purchase_nature_code=settings.posting.purchase_nature_code,
            payable_status=settings.posting.payable_status,
        )
        self.ofx_parser = OFXParser(settings.ofx.max_bytes)
        self.ofx = OFXReconciler(self.store, tolerance=settings.ofx.match_tolerance)
        self.sefaz = sefaz
        self.drafts: Dict[str, EntryNoteState] = {}

    def validator(self, company_id: str, collection: str = ENTRY_NOTES) -> FiscalValidator:
        rules = self.settings.validation
        return FiscalValidator(
            self.store,
            company_id,
            tolerance=rules.total_tolerance,
            ncm_placeholder=rules.ncm_placeholder,
            valid_cfop_digits=rules.valid_cfop_first_digits,
            outbound_cfop_range=rules.outbound_cfop_range,
            collection=collection,
        )

    def parse(self, xml_text: str) -> ParsedInvoice:
        return parse_invoice(xml_text, outbound_cfop_range=self.settings.validation.outbound_cfop_range)

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------
    async def load_catalog(self, company_id: str, path: Optional[Path] = None) -> int:
        path = path or self.settings.paths.catalog_file
        if not path:
            raise FiscalIntakeError("Nenhuma planilha de catálogo configurada.")
        products = CatalogLoader(Path(path)).to_products(company_id)
        existing = await self.store.select("products", company_id=company_id)
        known = {row.get("internal_code") for row in existing}
        rows = [
            {**vars(product), "company_id": company_id}
            for product in products
            if product.internal_code not in known
        ]
        if rows:
            await self.store.insert("products", rows)
        self.linker.refresh_products(company_id)
        LOGGER.info("Catalogue load: %s new products (%s already known)", len(rows), len(products) - len(rows))
        return len(rows)

    # ------------------------------------------------------------------
    # XML flows
    # ------------------------------------------------------------------
    async def validate_xml(
        self, xml_text: str, company_id: str, *, reconcile_totals: bool = False, collection: str = ENTRY_NOTES
    ) -> Tuple[ParsedInvoice, ValidationReport]:
        invoice = self.parse(xml_text)
        report = await self.validator(company_id, collection).validate(invoice, reconcile_totals=reconcile_totals)
        return invoice, report

    async def import_xml(self, xml_text: str, company_id: str, *, with_suggestions: bool = True) -> ImportResult:
        """Entry-note flow: the result holds an editable draft when validation passes."""

        invoice, report = await self.validate_xml(xml_text, company_id)
        result = ImportResult(invoice=invoice, report=report)
        if not report.is_valid:
            LOGGER.warning("Invoice %s/%s rejected: %s", invoice.number, invoice.series, report.summary())
            return result

        note = await self.mapper.map(invoice, company_id)
        result.state = EntryNoteState(note)
        result.draft_id = self.open_draft(result.state)

        if with_suggestions:
            pending = [index for index, item in enumerate(note.items) if item.link_status == LinkStatus.PENDING]
            found = await asyncio.gather(*(self.linker.suggest(company_id, note.items[index]) for index in pending))
            result.suggestions = dict(zip(pending, found))
        return result

    async def import_xml_standalone(self, xml_text: str, company_id: str) -> Dict[str, Any]:
        """Invoice register flow: totals are reconciled and the header/items are stored."""

        invoice, report = await self.validate_xml(
            xml_text, company_id, reconcile_totals=True, collection=INVOICE_HEADERS
        )
        supplier_id = None
        if report.is_valid:
            supplier_id = await self.suppliers.resolve_or_create(company_id, invoice.supplier)
        payload = build_entry_payload(invoice, supplier_id, report)
        if not report.is_valid:
            return payload

        header = await self.store.insert_one(
            INVOICE_HEADERS,
            {
                **payload["nota"],
                "company_id": company_id,
                "fornecedor_id": supplier_id,
                **payload["totais"],
                "status": payload["status"],
                "xml": invoice.raw_xml or None,
            },
        )
        if payload["itens"]:
            await self.store.insert(
                "invoice_items",
                [{**item, "invoice_header_id": header["id"], "company_id": company_id} for item in payload["itens"]],
            )
        payload["id"] = header["id"]
        LOGGER.info("Stored invoice %s/%s as %s", invoice.number, invoice.series, header["id"])
        return payload

    def open_draft(self, state: EntryNoteState) -> str:
        draft_id = str(uuid.uuid4())
        self.drafts[draft_id] = state
        return draft_id

    def draft(self, draft_id: str) -> EntryNoteState:
        try:
            return self.drafts[draft_id]
        except KeyError:
            raise FiscalIntakeError(f"Rascunho {draft_id} não encontrado.") from None

    async def post(self, draft_id: str, user_id: Optional[str] = None, confirm_warnings: bool = False) -> PostingResult:
        state = self.draft(draft_id)
        result = await self.posting.post(state, user_id, confirm_warnings=confirm_warnings)
        self.drafts.pop(draft_id, None)
        return result

    # ------------------------------------------------------------------
    # SEFAZ
    # ------------------------------------------------------------------
    def _gateway(self) -> SefazGateway:
        if self.sefaz is None:
            raise FiscalIntakeError("Integração com a SEFAZ não configurada.")
        return self.sefaz

    async def import_from_sefaz(self, access_key: str, company_id: str) -> ImportResult:
        xml_text = await self._gateway().fetch_xml(access_key, company_id)
        LOGGER.info("Downloaded XML for %s from SEFAZ", access_key)
        return await self.import_xml(xml_text, company_id)

    async def manifest(self, access_key: str, event_code: str, company_id: str) -> Tuple[ManifestResult, Optional[ImportResult]]:
        if event_code not in MANIFEST_EVENTS:
            raise FiscalIntakeError(f"Evento de manifestação desconhecido: {event_code}")
        result = await self._gateway().manifest(access_key, event_code, company_id)
        await self.store.insert_one(
            "manifestacao_nfe",
            {
                "company_id": company_id,
                "chave_acesso": access_key,
                "tipo_evento": event_code,
                "descricao_evento": MANIFEST_EVENTS[event_code],
                "status": "sucesso" if result.success else "erro",
                "protocolo": result.protocol,
                "mensagem": result.message,
            },
        )
        if not result.success:
            LOGGER.warning("Manifestation %s for %s failed: %s", event_code, access_key, result.message)
            return result, None
        if event_code == CONFIRMACAO:
            return result, await self.import_from_sefaz(access_key, company_id)
        return result, None

    # ------------------------------------------------------------------
    # OFX
    # ------------------------------------------------------------------
    async def import_ofx(self, content: str, company_id: str) -> OFXImportReport:
        report = self.ofx_parser.parse(content)
        return await self.ofx.process(report, company_id)

    def export_ofx_report(self, report: OFXImportReport, account_id: str) -> Tuple[Path, Path]:
        run_id = now_timestamp()
        folder = self.settings.paths.export_folder
        json_path = folder / f"ofx_{run_id}.json"
        csv_path = folder / f"ofx_{run_id}.csv"
        dump_json(json_path, report.to_export_payload(account_id))
        report.to_dataframe().to_csv(csv_path, index=False)
        LOGGER.info("OFX report exported to %s and %s", json_path, csv_path)
        return json_path, csv_path


__all__ = ["Processor", "ImportResult"]
