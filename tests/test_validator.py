from pathlib import Path

import pytest

from fiscal_intake.core.parser import parse_invoice
from fiscal_intake.core.store import InMemoryStore
from fiscal_intake.core.validator import FiscalValidator


EXAMPLES = Path(__file__).resolve().parents[1] / "example_docs"
COMPANY = "empresa-1"


def load_invoice(name: str):
    return parse_invoice((EXAMPLES / name).read_text(encoding="utf-8"))


def build_validator(store=None, **options) -> FiscalValidator:
    return FiscalValidator(store or InMemoryStore(), COMPANY, **options)


@pytest.mark.asyncio
async def test_valid_nfe_reports_corrections_only():
    invoice = load_invoice("nfe_compra.xml")
    report = await build_validator().validate(invoice)

    assert report.is_valid
    assert report.warnings == []
    fields = [issue.field for issue in report.corrections]
    assert "item[1].ncm" in fields
    assert "item[0].cfop" in fields
    assert "cfop" in fields


@pytest.mark.asyncio
async def test_invalid_ncm_is_corrected_to_placeholder():
    invoice = load_invoice("nfe_compra.xml")
    report = await build_validator().validate(invoice)

    correction = next(issue for issue in report.corrections if issue.field == "item[1].ncm")
    assert correction.original_value == "4016.93"
    assert correction.corrected_value == "00000000"
    assert correction.message == "NCM inválido, será corrigido para 00000000"
    assert invoice.line_items[1].ncm == "00000000"
    assert invoice.line_items[0].ncm == "70071100"


@pytest.mark.asyncio
async def test_outbound_cfop_is_shifted_on_inbound_note():
    invoice = load_invoice("nfe_compra.xml")
    report = await build_validator().validate(invoice)

    assert [item.cfop for item in invoice.line_items] == ["4102", "4102"]
    assert invoice.cfop == "4102"
    shifted = [issue for issue in report.corrections if issue.field.endswith("cfop")]
    assert all(issue.original_value == "5102" and issue.corrected_value == "4102" for issue in shifted)


@pytest.mark.asyncio
async def test_outbound_cfop_is_shifted_without_parser_candidates():
    invoice = load_invoice("nfe_sem_cobranca.xml")
    invoice.line_items[0].cfop = "5102"
    assert invoice.cfop_shifts == []
    report = await build_validator().validate(invoice)

    assert invoice.line_items[0].cfop == "4102"
    correction = next(issue for issue in report.corrections if issue.field == "item[0].cfop")
    assert (correction.original_value, correction.corrected_value) == ("5102", "4102")


@pytest.mark.asyncio
async def test_inbound_cfop_is_left_alone():
    invoice = load_invoice("nfe_sem_cobranca.xml")
    report = await build_validator().validate(invoice)

    assert invoice.line_items[0].cfop == "1102"
    assert not [issue for issue in report.corrections if "cfop" in issue.field]


@pytest.mark.asyncio
async def test_unknown_cfop_class_is_a_warning():
    invoice = load_invoice("nfe_sem_cobranca.xml")
    invoice.line_items[0].cfop = "8102"
    report = await build_validator().validate(invoice)

    assert report.is_valid
    assert [issue.field for issue in report.warnings] == ["item[0].cfop"]
    assert invoice.line_items[0].cfop == "8102"


@pytest.mark.asyncio
async def test_reimport_is_rejected_with_original_number():
    store = InMemoryStore()
    store.seed(
        "entry_notes",
        [
            {
                "company_id": COMPANY,
                "numero": "1234",
                "serie": "1",
                "chave_acesso": "35240312345678000195550010000012341000012345",
            }
        ],
    )
    report = await build_validator(store).validate(load_invoice("nfe_compra.xml"))

    assert not report.is_valid
    assert report.errors[0].message == "Esta nota fiscal já foi importada anteriormente (Nº 1234, Série 1)"


@pytest.mark.asyncio
async def test_number_and_series_fallback_detects_duplicates():
    store = InMemoryStore()
    store.seed("entry_notes", [{"company_id": COMPANY, "numero": "5678", "serie": "2", "chave_acesso": None}])
    report = await build_validator(store).validate(load_invoice("nfe_sem_cobranca.xml"))

    assert not report.is_valid
    assert "Nº 5678, Série 2" in report.errors[0].message


@pytest.mark.asyncio
async def test_other_tenant_does_not_block_import():
    store = InMemoryStore()
    store.seed("entry_notes", [{"company_id": "outra", "numero": "5678", "serie": "2"}])
    report = await build_validator(store).validate(load_invoice("nfe_sem_cobranca.xml"))

    assert report.is_valid


@pytest.mark.asyncio
async def test_malformed_access_key_is_an_error():
    invoice = load_invoice("nfe_sem_cobranca.xml")
    invoice.access_key = "3524031234"
    report = await build_validator().validate(invoice)

    assert [issue.field for issue in report.errors] == ["chave_acesso"]


@pytest.mark.asyncio
async def test_invalid_supplier_tax_id_is_an_error():
    invoice = load_invoice("nfse_servico.xml")
    invoice.supplier.tax_id = "123"
    report = await build_validator().validate(invoice)

    assert not report.is_valid
    assert report.errors[0].field == "fornecedor.cnpj"


@pytest.mark.asyncio
async def test_nfse_skips_access_key_and_cfop_checks():
    invoice = load_invoice("nfse_servico.xml")
    report = await build_validator().validate(invoice)

    assert report.is_valid
    assert report.errors == []
    assert report.warnings == []


@pytest.mark.asyncio
async def test_total_mismatch_is_a_warning_by_default():
    invoice = load_invoice("nfe_sem_cobranca.xml")
    invoice.totals.grand_total = 1490.0
    report = await build_validator().validate(invoice)

    assert report.is_valid
    warning = report.warnings[0]
    assert warning.field == "totais.valor_total"
    assert warning.corrected_value == 1500.0
    assert invoice.totals.grand_total == 1490.0


@pytest.mark.asyncio
async def test_total_mismatch_is_reconciled_on_request():
    invoice = load_invoice("nfe_sem_cobranca.xml")
    invoice.totals.grand_total = 1490.0
    report = await build_validator().validate(invoice, reconcile_totals=True)

    assert report.warnings == []
    assert report.corrections[-1].field == "totais.valor_total"
    assert invoice.totals.grand_total == 1500.0


@pytest.mark.asyncio
async def test_total_within_tolerance_is_accepted():
    invoice = load_invoice("nfe_sem_cobranca.xml")
    invoice.totals.grand_total = 1500.005
    report = await build_validator().validate(invoice)

    assert report.warnings == []


@pytest.mark.asyncio
async def test_configured_outbound_range_is_respected():
    invoice = load_invoice("nfe_compra.xml")
    report = await build_validator(outbound_cfop_range=(5400, 5499)).validate(invoice)

    assert invoice.line_items[0].cfop == "5102"
    assert not [issue for issue in report.corrections if issue.field == "cfop"]


def test_report_dict_carries_summary():
    from fiscal_intake.core.models import ValidationIssue, ValidationReport

    report = ValidationReport(warnings=[ValidationIssue(field="x", message="y")])
    data = report.to_dict()

    assert data["is_valid"] is True
    assert data["summary"] == {"total_errors": 0, "total_warnings": 1, "total_corrections": 0}
