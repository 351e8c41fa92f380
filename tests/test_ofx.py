from datetime import date
from pathlib import Path

import pytest

from fiscal_intake.core.errors import ParseError, ReconciliationError, StoreError
from fiscal_intake.core.ofx import (
    MatchType,
    OFXParser,
    OFXReconciler,
    TransactionStatus,
    classify,
)
from fiscal_intake.core.store import InMemoryStore


EXAMPLES = Path(__file__).resolve().parents[1] / "example_docs"
COMPANY = "empresa-1"
ACCOUNT = "conta-itau"


def read_statement() -> str:
    return (EXAMPLES / "extrato.ofx").read_text(encoding="utf-8")


def build_store() -> InMemoryStore:
    store = InMemoryStore()
    store.seed("suppliers", [{"id": "sup-1", "company_id": COMPANY, "nome_razao": "Vidros Brasil"}])
    store.seed(
        "accounts_payable",
        [
            {
                "id": "ap-1",
                "company_id": COMPANY,
                "supplier_id": "sup-1",
                "description": "NF 1234/1 - Duplicata 001",
                "final_value": 482.10,
                "paid_value": 0.0,
                "status": "em_aberto",
            },
            {
                "id": "ap-2",
                "company_id": COMPANY,
                "supplier_id": "sup-1",
                "description": "NF 1234/1 - Duplicata 002",
                "final_value": 482.10,
                "paid_value": 0.0,
                "status": "em_aberto",
            },
        ],
    )
    store.seed("customers", [{"id": "cli-1", "company_id": COMPANY, "name": "João Cliente"}])
    store.seed(
        "accounts_receivable",
        [
            {
                "id": "ar-1",
                "company_id": COMPANY,
                "customer_id": "cli-1",
                "description": "Instalação parabrisa",
                "net_value": 1500.0,
                "status": "em_aberto",
            }
        ],
    )
    return store


async def processed_report(store: InMemoryStore):
    report = OFXParser().parse(read_statement())
    return await OFXReconciler(store).process(report, COMPANY)


def test_parser_reads_statement():
    report = OFXParser().parse(read_statement())

    assert report.bank_id == "0341"
    assert report.account_id == "12345-6"
    assert report.processed_count == 6
    assert report.total_entries == 3200.0
    assert report.total_exits == 530.5
    assert report.net_change == 2669.5
    assert report.period_start == date(2024, 3, 5)
    assert report.period_end == date(2024, 3, 9)

    first = report.transactions[0]
    assert first.fitid == "202403050001"
    assert first.amount == -482.10
    assert first.type == "DEBIT"
    assert first.description == "PAGAMENTO BOLETO - VIDROS BRASIL & CIA"
    assert first.bank_type == "DEBIT"


def test_transaction_without_fitid_is_skipped_with_alert():
    content = """<OFX><BANKTRANLIST>
<STMTTRN><TRNTYPE>CREDIT<DTPOSTED>20240301<TRNAMT>10.00<NAME>SEM ID</STMTTRN>
<STMTTRN><TRNTYPE>CREDIT<DTPOSTED>20240302<TRNAMT>20.00<FITID>A2<NAME>OK</STMTTRN>
</BANKTRANLIST></OFX>"""
    report = OFXParser().parse(content)

    assert [t.fitid for t in report.transactions] == ["A2"]
    assert report.alerts and "Transação 1" in report.alerts[0]


def test_missing_transaction_list_is_rejected():
    with pytest.raises(ParseError, match="BANKTRANLIST"):
        OFXParser().parse("<OFX><STMTRS></STMTRS></OFX>")


def test_oversized_statement_is_rejected():
    with pytest.raises(ParseError, match="limite"):
        OFXParser(max_bytes=100).parse(read_statement())


def test_pathological_input_is_scanned_linearly():
    content = "<BANKTRANLIST>" + "<STMTTRN><" * 20000 + "</BANKTRANLIST>"
    report = OFXParser().parse(content)

    assert report.transactions == []
    assert not report.is_valid


def test_classify_by_keywords():
    transactions = classify(OFXParser().parse(read_statement()).transactions)

    assert [t.category for t in transactions] == [
        "Contas a pagar",
        "Recebimento Cliente",
        "Taxas",
        "Entrada",
        "Recebimento Cliente",
        "Impostos",
    ]


@pytest.mark.asyncio
async def test_duplicates_inside_file_and_already_saved():
    store = build_store()
    store.seed("reconciliation_items", [{"fitid": "202403070001", "company_id": COMPANY}])
    report = await processed_report(store)

    statuses = {t.fitid: t.status for t in report.transactions}
    assert statuses["202403070001"] == TransactionStatus.RECONCILED
    assert report.transactions[4].status == TransactionStatus.DUPLICATED
    assert report.transactions[1].status == TransactionStatus.NEW
    assert report.new_count == 4
    assert report.duplicates_count == 2
    assert any("já importada" in alert for alert in report.alerts)


@pytest.mark.asyncio
async def test_saved_transactions_of_other_company_are_ignored():
    store = build_store()
    store.seed(
        "reconciliation_items",
        [{"fitid": "202403050001", "company_id": "outra-empresa", "is_matched": False}],
    )
    reconciler = OFXReconciler(store)
    report = await processed_report(store)

    payment = report.transactions[0]
    assert payment.status == TransactionStatus.NEW
    saved = await reconciler.save_transactions(report, ACCOUNT, COMPANY)
    assert saved.count == 5

    await reconciler.reconcile(payment, ACCOUNT, COMPANY)
    foreign = await store.select_one("reconciliation_items", company_id="outra-empresa", fitid=payment.fitid)
    assert foreign["is_matched"] is False
    mine = await store.select_one("reconciliation_items", company_id=COMPANY, fitid=payment.fitid)
    assert mine["is_matched"] is True
    assert mine["account_id"] == ACCOUNT


@pytest.mark.asyncio
async def test_matches_are_suggested_not_applied():
    store = build_store()
    report = await processed_report(store)

    payment = report.transactions[0]
    assert payment.match_type == MatchType.PAYABLE
    assert payment.match_id == "ap-1"
    assert payment.match_description == "Pagamento: NF 1234/1 - Duplicata 001 (Vidros Brasil)"
    assert payment.status == TransactionStatus.NEW

    receipt = report.transactions[1]
    assert receipt.match_type == MatchType.RECEIVABLE
    assert receipt.match_description == "Recebimento: Instalação parabrisa (João Cliente)"

    # the repeated PIX is a duplicate and is not matched again
    assert report.transactions[4].match_id is None
    assert (await store.select_one("accounts_payable", id="ap-1"))["status"] == "em_aberto"


@pytest.mark.asyncio
async def test_one_title_is_not_suggested_twice():
    store = build_store()
    content = """<BANKTRANLIST>
<STMTTRN><DTPOSTED>20240305<TRNAMT>-482.10<FITID>X1<NAME>PAGAMENTO</STMTTRN>
<STMTTRN><DTPOSTED>20240306<TRNAMT>-482.10<FITID>X2<NAME>PAGAMENTO</STMTTRN>
<STMTTRN><DTPOSTED>20240307<TRNAMT>-482.10<FITID>X3<NAME>PAGAMENTO</STMTTRN>
</BANKTRANLIST>"""
    report = await OFXReconciler(store).process(OFXParser().parse(content), COMPANY)

    assert [t.match_id for t in report.transactions] == ["ap-1", "ap-2", None]


@pytest.mark.asyncio
async def test_save_transactions_stores_new_only():
    store = build_store()
    reconciler = OFXReconciler(store)
    report = await processed_report(store)
    saved = await reconciler.save_transactions(report, ACCOUNT, COMPANY, "u-1")

    assert saved.count == 5
    items = await store.select("reconciliation_items", reconciliation_id=saved.reconciliation_id)
    assert sorted(item["fitid"] for item in items) == sorted(
        ["202403050001", "202403060001", "202403070001", "202403080001", "202403090001"]
    )
    assert all(item["is_matched"] is False for item in items)

    again = await processed_report(store)
    assert again.new_count == 0


@pytest.mark.asyncio
async def test_save_failure_removes_header():
    store = build_store()
    report = await processed_report(store)
    store.fail_next("reconciliation_items", "insert", StoreError("timeout"))

    with pytest.raises(StoreError):
        await OFXReconciler(store).save_transactions(report, ACCOUNT, COMPANY)
    assert await store.select("bank_reconciliations") == []


@pytest.mark.asyncio
async def test_reconcile_settles_title_and_records_movement():
    store = build_store()
    reconciler = OFXReconciler(store)
    report = await processed_report(store)
    await reconciler.save_transactions(report, ACCOUNT, COMPANY)

    payment = report.transactions[0]
    await reconciler.reconcile(payment, ACCOUNT, COMPANY, "u-1")

    assert payment.status == TransactionStatus.RECONCILED
    payable = await store.select_one("accounts_payable", id="ap-1")
    assert payable["status"] == "pago_total"
    assert payable["paid_value"] == 482.10
    movement = await store.select_one("financial_movements", fitid=payment.fitid)
    assert movement["movement_type"] == "saida"
    assert movement["payable_id"] == "ap-1"
    item = await store.select_one("reconciliation_items", fitid=payment.fitid)
    assert item["is_matched"] is True

    with pytest.raises(ReconciliationError, match="já foi conciliada"):
        await reconciler.reconcile(payment, ACCOUNT, COMPANY)


@pytest.mark.asyncio
async def test_reconcile_failure_reverts_previous_steps():
    store = build_store()
    reconciler = OFXReconciler(store)
    report = await processed_report(store)
    await reconciler.save_transactions(report, ACCOUNT, COMPANY)
    store.fail_next("reconciliation_items", "update", StoreError("timeout"))

    payment = report.transactions[0]
    with pytest.raises(ReconciliationError):
        await reconciler.reconcile(payment, ACCOUNT, COMPANY)

    payable = await store.select_one("accounts_payable", id="ap-1")
    assert payable["status"] == "em_aberto"
    assert payable["paid_value"] == 0.0
    assert await store.select("financial_movements") == []
    assert payment.status == TransactionStatus.NEW


@pytest.mark.asyncio
async def test_reconcile_requires_saved_statement():
    store = build_store()
    report = await processed_report(store)

    with pytest.raises(ReconciliationError, match="salve o extrato"):
        await OFXReconciler(store).reconcile(report.transactions[0], ACCOUNT, COMPANY)


@pytest.mark.asyncio
async def test_reconcile_rejects_duplicates():
    store = build_store()
    report = await processed_report(store)

    with pytest.raises(ReconciliationError, match="duplicada"):
        await OFXReconciler(store).reconcile(report.transactions[4], ACCOUNT, COMPANY)


def test_export_payload_and_dataframe():
    parsed = OFXParser().parse(read_statement())
    classify(parsed.transactions)
    payload = parsed.to_export_payload(ACCOUNT)

    assert payload["conta_id"] == ACCOUNT
    assert payload["periodo"] == {"inicio": "2024-03-05", "fim": "2024-03-09"}
    assert payload["transacoes"][0]["tipo"] == "debito"
    assert payload["transacoes"][0]["vinculo"] == {"tipo": "nenhum", "id_referencia": ""}

    frame = parsed.to_dataframe()
    assert list(frame["fitid"])[:2] == ["202403050001", "202403060001"]
    assert frame.loc[0, "category"] == "Contas a pagar"
