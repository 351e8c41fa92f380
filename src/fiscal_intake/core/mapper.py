"""Conversion of parsed fiscal documents into internal records."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from .entry_note import compute_totals
from .linker import ProductLinkResolver
from .models import (
    DocumentKind,
    EntryNote,
    EntryNoteItem,
    FieldOrigin,
    ItemTaxes,
    LineItem,
    LinkStatus,
    NFeLineItem,
    NoteStatus,
    ParsedInvoice,
    Party,
    TaxRecord,
    ValidationReport,
)
from .store import Store
from .utils import only_digits, person_type


LOGGER = logging.getLogger(__name__)

SUPPLIERS = "suppliers"

FISCAL_HEADER_FIELDS = (
    "number",
    "series",
    "access_key",
    "supplier_id",
    "cfop",
    "operation_nature",
    "purpose",
    "issue_date",
)


class SupplierResolver:
    """Find suppliers by tax id, creating them from the invoice issuer when missing."""

    def __init__(self, store: Store) -> None:
        self.store = store
        self._cache: Dict[Tuple[str, str], str] = {}

    async def find(self, company_id: str, tax_id: str) -> Optional[str]:
        tax_id = only_digits(tax_id)
        key = (company_id, tax_id)
        if key in self._cache:
            return self._cache[key]
        rows = await self.store.select(SUPPLIERS, limit=1, company_id=company_id, cpf_cnpj=tax_id)
        if not rows:
            return None
        self._cache[key] = rows[0]["id"]
        return rows[0]["id"]

    async def resolve_or_create(self, company_id: str, party: Party) -> str:
        tax_id = only_digits(party.tax_id)
        existing = await self.find(company_id, tax_id)
        if existing:
            LOGGER.debug("Reusing supplier %s for %s", existing, tax_id)
            return existing

        address = party.address
        row = await self.store.insert_one(
            SUPPLIERS,
            {
                "company_id": company_id,
                "cpf_cnpj": tax_id,
                "tipo_pessoa": person_type(tax_id),
                "nome_razao": party.legal_name or f"Fornecedor {tax_id[:8]}",
                "nome_fantasia": party.trade_name,
                "inscricao_estadual": party.state_registration,
                "telefone": party.phone,
                "email": party.email,
                "logradouro": address.street if address else None,
                "numero": address.number if address else None,
                "complemento": address.complement if address else None,
                "bairro": address.district if address else None,
                "cidade": address.city if address else None,
                "uf": address.state if address else None,
                "cep": address.zip_code if address else None,
                "ativo": True,
            },
        )
        self._cache[(company_id, tax_id)] = row["id"]
        LOGGER.info("Created supplier %s (%s)", row["nome_razao"], tax_id)
        return row["id"]


def _tax_value(record: Optional[TaxRecord]) -> float:
    return record.value if record else 0.0


def item_from_line(line: LineItem, supplier_tax_id: str) -> EntryNoteItem:
    """Seed an entry note item 1:1 from an extracted line."""

    quantity = line.quantity
    icms = getattr(line, "icms", None)
    ipi = getattr(line, "ipi", None)
    return EntryNoteItem(
        fiscal_quantity=quantity,
        fiscal_unit_price=line.unit_price,
        fiscal_total_value=line.total_value,
        fiscal_unit=line.unit,
        ncm=line.ncm,
        internal_quantity=quantity,
        internal_unit=line.unit,
        conversion_factor=1.0,
        internal_unit_price=line.total_value / quantity if quantity > 0 else 0.0,
        discount=line.discount,
        taxes=ItemTaxes(
            icms=icms or TaxRecord(),
            ipi=_tax_value(ipi),
            pis=_tax_value(line.pis),
            cofins=_tax_value(line.cofins),
        ),
        supplier_tax_id=supplier_tax_id,
        supplier_product_code=line.supplier_code,
        fiscal_description=line.description,
        gtin=line.gtin if isinstance(line, NFeLineItem) else None,
        cest=line.cest if isinstance(line, NFeLineItem) else None,
        origin_code=line.origin_code if isinstance(line, NFeLineItem) else None,
        link_status=LinkStatus.PENDING,
        origin=FieldOrigin.FISCAL_IMPORTED,
    )


class FiscalMapper:
    """Build a draft :class:`EntryNote` from a validated :class:`ParsedInvoice`."""

    def __init__(self, store: Store, linker: ProductLinkResolver, suppliers: Optional[SupplierResolver] = None) -> None:
        self.store = store
        self.linker = linker
        self.suppliers = suppliers or SupplierResolver(store)

    async def map(self, invoice: ParsedInvoice, company_id: str) -> EntryNote:
        supplier_id = await self.suppliers.resolve_or_create(company_id, invoice.supplier)
        supplier_tax_id = only_digits(invoice.supplier.tax_id)

        items = [item_from_line(line, supplier_tax_id) for line in invoice.line_items]
        await self.linker.resolve_stored(items, company_id)

        totals = compute_totals(
            items,
            freight=invoice.totals.freight,
            insurance=invoice.totals.insurance,
            other_expenses=invoice.totals.other_expenses,
        )
        note = EntryNote(
            number=invoice.number,
            series=invoice.series,
            entry_type=invoice.entry_type,
            document_type="NFSe" if invoice.document_kind == DocumentKind.NFSE else "NFe",
            access_key=invoice.access_key,
            issue_date=invoice.issue_date,
            entry_date=invoice.entry_date,
            supplier_id=supplier_id,
            cfop=invoice.cfop,
            operation_nature=invoice.operation_nature,
            purpose=invoice.purpose,
            status=NoteStatus.DRAFT,
            totals=totals,
            items=items,
            installments=list(invoice.installments),
            field_origins={name: FieldOrigin.FISCAL_IMPORTED for name in FISCAL_HEADER_FIELDS},
            xml=invoice.raw_xml or None,
            company_id=company_id,
        )
        LOGGER.info(
            "Mapped %s %s/%s into entry note draft (%s items)",
            note.document_type,
            note.number,
            note.series,
            len(items),
        )
        return note


def build_entry_payload(invoice: ParsedInvoice, supplier_id: Optional[str], report: ValidationReport) -> Dict[str, Any]:
    """Normalised write payload for the standalone invoice import flow."""

    totals = invoice.totals
    items: List[Dict[str, Any]] = []
    for line in invoice.line_items:
        icms = getattr(line, "icms", None)
        ipi = getattr(line, "ipi", None)
        iss = getattr(line, "iss", None)
        items.append(
            {
                "codigo_produto": line.supplier_code,
                "descricao": line.description,
                "ncm": line.ncm,
                "cfop": line.cfop,
                "unidade": line.unit,
                "quantidade": line.quantity,
                "valor_unitario": line.unit_price,
                "valor_total": line.total_value,
                "valor_desconto": line.discount,
                "gtin": getattr(line, "gtin", None),
                "cest": getattr(line, "cest", None),
                "cst": getattr(line, "tax_regime_code", None),
                "origem": getattr(line, "origin_code", None),
                "icms_base": icms.base if icms else 0.0,
                "icms_aliquota": icms.rate if icms else 0.0,
                "icms_valor": _tax_value(icms),
                "ipi_valor": _tax_value(ipi),
                "pis_valor": _tax_value(line.pis),
                "cofins_valor": _tax_value(line.cofins),
                "iss_aliquota": iss.rate if iss else 0.0,
                "iss_valor": _tax_value(iss),
            }
        )

    return {
        "nota": {
            "tipo_documento": invoice.document_kind.value,
            "direcao": invoice.direction.value,
            "numero": invoice.number,
            "serie": invoice.series,
            "chave_acesso": invoice.access_key or None,
            "modelo": invoice.document_model,
            "data_emissao": invoice.issue_date.isoformat(),
            "data_entrada": invoice.entry_date.isoformat(),
            "cfop": invoice.cfop,
            "natureza_operacao": invoice.operation_nature,
            "finalidade": invoice.purpose.value,
            "tipo_entrada": invoice.entry_type,
        },
        "fornecedor": {
            "id": supplier_id,
            "cpf_cnpj": only_digits(invoice.supplier.tax_id),
            "nome_razao": invoice.supplier.legal_name,
            "nome_fantasia": invoice.supplier.trade_name,
        },
        "itens": items,
        "totais": {
            "valor_produtos": totals.products_total,
            "valor_servicos": totals.services_total,
            "valor_desconto": totals.discounts_total,
            "valor_impostos": totals.taxes_total,
            "valor_frete": totals.freight,
            "valor_seguro": totals.insurance,
            "outras_despesas": totals.other_expenses,
            "valor_total": totals.grand_total,
        },
        "duplicatas": [
            {"numero": inst.number, "vencimento": inst.due_date.isoformat(), "valor": inst.value}
            for inst in invoice.installments
        ],
        "validacao": report.to_dict(),
        "status": "pronto_para_salvar" if report.is_valid else "nao_aprovado",
    }


__all__ = ["SupplierResolver", "FiscalMapper", "build_entry_payload", "item_from_line", "FISCAL_HEADER_FIELDS"]
