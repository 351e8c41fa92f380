import json
from pathlib import Path

import pytest

from fiscal_intake.config import Settings
from fiscal_intake.core.errors import FiscalIntakeError
from fiscal_intake.core.models import LinkStatus, NoteStatus
from fiscal_intake.core.pipeline import Processor
from fiscal_intake.core.sefaz import CIENCIA, CONFIRMACAO, ManifestResult
from fiscal_intake.core.store import InMemoryStore


EXAMPLES = Path(__file__).resolve().parents[1] / "example_docs"
COMPANY = "empresa-1"


def read_example(name: str) -> str:
    return (EXAMPLES / name).read_text(encoding="utf-8")


def build_processor(tmp_path, store=None, sefaz=None) -> Processor:
    return Processor(Settings.default(tmp_path), store=store or InMemoryStore(), sefaz=sefaz)


class FakeSefaz:
    def __init__(self, success=True):
        self.success = success
        self.events = []

    async def fetch_xml(self, access_key, company_id):
        return read_example("nfe_compra.xml")

    async def manifest(self, access_key, event_code, company_id):
        self.events.append(event_code)
        return ManifestResult(access_key=access_key, event_code=event_code, success=self.success, protocol="135240000001")


@pytest.mark.asyncio
async def test_import_opens_draft_with_suggestions(tmp_path):
    store = InMemoryStore()
    store.seed(
        "products",
        [{"id": "p-gol", "company_id": COMPANY, "name": "Parabrisa Gol G5", "barcode": "7891234567895", "quantity": 0}],
    )
    processor = build_processor(tmp_path, store)
    result = await processor.import_xml(read_example("nfe_compra.xml"), COMPANY)

    assert result.report.is_valid
    assert result.state.status == NoteStatus.DRAFT
    assert result.pending_count == 2
    assert processor.draft(result.draft_id) is result.state
    assert result.suggestions[0][0].product.id == "p-gol"
    assert result.suggestions[0][0].match_type == "gtin"


@pytest.mark.asyncio
async def test_full_flow_link_post_and_reimport(tmp_path):
    store = InMemoryStore()
    store.seed("products", [{"id": "p-gol", "company_id": COMPANY, "name": "Parabrisa", "quantity": 0}])
    processor = build_processor(tmp_path, store)
    xml = read_example("nfe_compra.xml")

    result = await processor.import_xml(xml, COMPANY)
    state = result.state
    await processor.linker.link(COMPANY, state.items[0], "p-gol")
    await processor.linker.ignore(COMPANY, state.items[1])
    posted = await processor.post(result.draft_id, "u-1")

    assert state.status == NoteStatus.POSTED
    assert posted.movements == 1
    assert posted.payables_created == 2
    with pytest.raises(FiscalIntakeError):
        processor.draft(result.draft_id)

    again = await processor.import_xml(xml, COMPANY)
    assert again.state is None
    assert "já foi importada" in again.report.errors[0].message

    # other codes of the same supplier still need a decision
    second = await processor.import_xml(read_example("nfe_sem_cobranca.xml"), COMPANY)
    assert second.state.items[0].link_status == LinkStatus.PENDING


@pytest.mark.asyncio
async def test_standalone_import_reconciles_totals(tmp_path):
    processor = build_processor(tmp_path)
    xml = read_example("nfe_sem_cobranca.xml").replace("<vNF>1500.00</vNF>", "<vNF>1490.00</vNF>")
    payload = await processor.import_xml_standalone(xml, COMPANY)

    assert payload["status"] == "pronto_para_salvar"
    assert payload["totais"]["valor_total"] == 1500.0
    header = await processor.store.select_one("invoice_headers", id=payload["id"])
    assert header["numero"] == "5678"
    assert len(await processor.store.select("invoice_items", invoice_header_id=payload["id"])) == 1


@pytest.mark.asyncio
async def test_standalone_import_rejects_second_registration(tmp_path):
    processor = build_processor(tmp_path)
    xml = read_example("nfe_sem_cobranca.xml")

    first = await processor.import_xml_standalone(xml, COMPANY)
    second = await processor.import_xml_standalone(xml, COMPANY)

    assert first["status"] == "pronto_para_salvar"
    assert second["status"] == "nao_aprovado"
    assert "id" not in second
    assert len(await processor.store.select("invoice_headers", company_id=COMPANY)) == 1

    # another tenant may register the same document
    other = await processor.import_xml_standalone(xml, "empresa-2")
    assert other["status"] == "pronto_para_salvar"


@pytest.mark.asyncio
async def test_load_catalog_skips_known_codes(tmp_path):
    sheet = tmp_path / "catalogo.csv"
    sheet.write_text("codigo,descricao\nVID-001,Parabrisa\nBOR-010,Borracha\n", encoding="utf-8")
    processor = build_processor(tmp_path)

    assert await processor.load_catalog(COMPANY, sheet) == 2
    assert await processor.load_catalog(COMPANY, sheet) == 0
    assert len(await processor.linker.catalog(COMPANY)) == 2


@pytest.mark.asyncio
async def test_manifest_confirmation_imports_note(tmp_path):
    sefaz = FakeSefaz()
    processor = build_processor(tmp_path, sefaz=sefaz)
    key = "35240312345678000195550010000012341000012345"

    result, imported = await processor.manifest(key, CONFIRMACAO, COMPANY)
    assert result.success
    assert imported.state is not None

    _, nothing = await processor.manifest(key, CIENCIA, COMPANY)
    assert nothing is None
    events = await processor.store.select("manifestacao_nfe", chave_acesso=key)
    assert [event["tipo_evento"] for event in events] == [CONFIRMACAO, CIENCIA]


@pytest.mark.asyncio
async def test_sefaz_requires_gateway(tmp_path):
    processor = build_processor(tmp_path)

    with pytest.raises(FiscalIntakeError):
        await processor.import_from_sefaz("1" * 44, COMPANY)
    with pytest.raises(FiscalIntakeError):
        await processor.manifest("1" * 44, "999999", COMPANY)


@pytest.mark.asyncio
async def test_ofx_import_and_export(tmp_path):
    processor = build_processor(tmp_path)
    report = await processor.import_ofx(read_example("extrato.ofx"), COMPANY)
    json_path, csv_path = processor.export_ofx_report(report, "conta-1")

    data = json.loads(json_path.read_text(encoding="utf-8"))
    assert data["conta_id"] == "conta-1"
    assert len(data["transacoes"]) == 6
    assert csv_path.read_text(encoding="utf-8").startswith("fitid,posted_at")
