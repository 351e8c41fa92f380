"""Validation and automatic correction of parsed fiscal documents."""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

from .models import DocumentKind, NFeLineItem, ParsedInvoice, ValidationIssue, ValidationReport
from .parser import OUTBOUND_CFOP_RANGE, outbound_to_inbound
from .store import Store
from .utils import money_equals, only_digits, round_money


LOGGER = logging.getLogger(__name__)


NCM_PLACEHOLDER = "00000000"
VALID_CFOP_FIRST_DIGITS = ("1", "2", "3", "5", "6", "7")
ENTRY_NOTES = "entry_notes"
INVOICE_HEADERS = "invoice_headers"


class FiscalValidator:
    """Check a :class:`ParsedInvoice` against fiscal rules and fix what can be fixed.

    Problems never raise: they land in the returned :class:`ValidationReport`.
    Corrections are applied to ``invoice`` in place and disclosed in the report
    with their original and corrected values.
    """

    def __init__(
        self,
        store: Store,
        company_id: str,
        *,
        tolerance: float = 0.01,
        ncm_placeholder: str = NCM_PLACEHOLDER,
        valid_cfop_digits: Sequence[str] = VALID_CFOP_FIRST_DIGITS,
        outbound_cfop_range: Tuple[int, int] = OUTBOUND_CFOP_RANGE,
        collection: str = ENTRY_NOTES,
    ) -> None:
        self.store = store
        self.company_id = company_id
        self.collection = collection
        self.tolerance = tolerance
        self.ncm_placeholder = ncm_placeholder
        self.valid_cfop_digits = tuple(valid_cfop_digits)
        self.outbound_cfop_range = tuple(outbound_cfop_range)

    async def validate(self, invoice: ParsedInvoice, *, reconcile_totals: bool = False) -> ValidationReport:
        report = ValidationReport()

        if invoice.document_kind == DocumentKind.NFE:
            await self._check_access_key(invoice, report)

        self._check_supplier(invoice, report)
        self._check_ncm(invoice, report)
        if invoice.document_kind == DocumentKind.NFE:
            self._check_cfop(invoice, report)
        self._check_recipient(invoice, report)
        self._check_totals(invoice, report, reconcile=reconcile_totals)

        LOGGER.info(
            "Validated %s %s/%s: %s",
            invoice.document_kind.value,
            invoice.number,
            invoice.series,
            report.summary(),
        )
        return report

    async def _check_access_key(self, invoice: ParsedInvoice, report: ValidationReport) -> None:
        key = only_digits(invoice.access_key)
        if len(key) != 44 or key != invoice.access_key:
            report.errors.append(
                ValidationIssue(
                    field="chave_acesso",
                    message="Chave de acesso inválida (deve ter 44 dígitos)",
                    original_value=invoice.access_key,
                )
            )
            return

        existing = await self._find_existing(invoice)
        if existing:
            report.errors.append(
                ValidationIssue(
                    field="chave_acesso",
                    message=(
                        "Esta nota fiscal já foi importada anteriormente "
                        f"(Nº {existing.get('numero')}, Série {existing.get('serie')})"
                    ),
                    original_value=invoice.access_key,
                )
            )

    async def _find_existing(self, invoice: ParsedInvoice) -> Optional[dict]:
        rows = await self.store.select(
            self.collection, limit=1, company_id=self.company_id, chave_acesso=invoice.access_key
        )
        if rows:
            return rows[0]
        rows = await self.store.select(
            self.collection, limit=1, company_id=self.company_id, numero=invoice.number, serie=invoice.series
        )
        return rows[0] if rows else None

    @staticmethod
    def _check_supplier(invoice: ParsedInvoice, report: ValidationReport) -> None:
        tax_id = only_digits(invoice.supplier.tax_id)
        if len(tax_id) not in (11, 14):
            report.errors.append(
                ValidationIssue(
                    field="fornecedor.cnpj",
                    message="CNPJ/CPF do fornecedor inválido",
                    original_value=invoice.supplier.tax_id,
                )
            )

    def _check_ncm(self, invoice: ParsedInvoice, report: ValidationReport) -> None:
        for index, item in enumerate(invoice.line_items):
            if len(only_digits(item.ncm)) == 8:
                continue
            report.corrections.append(
                ValidationIssue(
                    field=f"item[{index}].ncm",
                    message=f"NCM inválido, será corrigido para {self.ncm_placeholder}",
                    original_value=item.ncm,
                    corrected_value=self.ncm_placeholder,
                )
            )
            item.ncm = self.ncm_placeholder

    def _check_cfop(self, invoice: ParsedInvoice, report: ValidationReport) -> None:
        for index, item in enumerate(invoice.line_items):
            if not isinstance(item, NFeLineItem):
                continue
            cfop = only_digits(item.cfop)
            if not 4 <= len(cfop) <= 6:
                report.warnings.append(
                    ValidationIssue(field=f"item[{index}].cfop", message="CFOP inválido", original_value=item.cfop)
                )
                continue
            if cfop[0] not in self.valid_cfop_digits:
                report.warnings.append(
                    ValidationIssue(
                        field=f"item[{index}].cfop",
                        message=f"CFOP {item.cfop} com primeiro dígito fora da tabela",
                        original_value=item.cfop,
                    )
                )
                continue

            shifted = outbound_to_inbound(item.cfop, self.outbound_cfop_range) if invoice.is_inbound else None
            if shifted:
                report.corrections.append(
                    ValidationIssue(
                        field=f"item[{index}].cfop",
                        message=f"CFOP de saída {item.cfop} convertido para entrada {shifted}",
                        original_value=item.cfop,
                        corrected_value=shifted,
                    )
                )
                item.cfop = shifted

        header_shift = outbound_to_inbound(invoice.cfop, self.outbound_cfop_range) if invoice.is_inbound else None
        if header_shift:
            report.corrections.append(
                ValidationIssue(
                    field="cfop",
                    message=f"CFOP de saída {invoice.cfop} convertido para entrada {header_shift}",
                    original_value=invoice.cfop,
                    corrected_value=header_shift,
                )
            )
            invoice.cfop = header_shift

    @staticmethod
    def _check_recipient(invoice: ParsedInvoice, report: ValidationReport) -> None:
        if invoice.recipient is None:
            return
        tax_id = only_digits(invoice.recipient.tax_id)
        if len(tax_id) not in (11, 14):
            report.warnings.append(
                ValidationIssue(
                    field="destinatario.cnpj",
                    message="CNPJ/CPF do destinatário inválido",
                    original_value=invoice.recipient.tax_id,
                )
            )

    def _check_totals(self, invoice: ParsedInvoice, report: ValidationReport, *, reconcile: bool) -> None:
        totals = invoice.totals
        computed = round_money(
            sum(item.total_value for item in invoice.line_items)
            + totals.freight
            + totals.insurance
            + totals.other_expenses
            - totals.discounts_total
        )
        if money_equals(computed, totals.grand_total, self.tolerance):
            return

        if reconcile:
            report.corrections.append(
                ValidationIssue(
                    field="totais.valor_total",
                    message="Valor total recalculado a partir dos itens",
                    original_value=totals.grand_total,
                    corrected_value=computed,
                )
            )
            totals.grand_total = computed
            return

        report.warnings.append(
            ValidationIssue(
                field="totais.valor_total",
                message=(
                    f"Valor total da nota ({totals.grand_total:.2f}) diverge da soma calculada "
                    f"({computed:.2f})"
                ),
                original_value=totals.grand_total,
                corrected_value=computed,
            )
        )


__all__ = ["ENTRY_NOTES", "FiscalValidator", "INVOICE_HEADERS", "NCM_PLACEHOLDER", "VALID_CFOP_FIRST_DIGITS"]
