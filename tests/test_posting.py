from datetime import date, timedelta

import pytest

from fiscal_intake.core.entry_note import EntryNoteState
from fiscal_intake.core.errors import FiscalIntakeError, PostingBlockedError, StoreError
from fiscal_intake.core.models import (
    EntryNote,
    EntryNoteItem,
    FieldOrigin,
    Installment,
    LinkStatus,
    NoteStatus,
    NoteTotals,
)
from fiscal_intake.core.posting import INVENTORY_FAILED_NOTICE, PAYABLES_FAILED_NOTICE, PostingService
from fiscal_intake.core.store import InMemoryStore


COMPANY = "empresa-1"


def build_store() -> InMemoryStore:
    store = InMemoryStore()
    store.seed(
        "products",
        [
            {"id": "p-gol", "company_id": COMPANY, "name": "Parabrisa Gol G5", "quantity": 10, "purchase_price": 300.0},
            {"id": "p-borracha", "company_id": COMPANY, "name": "Borracha vedação", "quantity": 0, "purchase_price": 0.0},
        ],
    )
    store.seed("financial_natures", [{"id": "nat-compra", "company_id": COMPANY, "code": "4.01"}])
    return store


def make_item(product_id, quantity, total, **overrides) -> EntryNoteItem:
    data = dict(
        fiscal_quantity=quantity,
        fiscal_unit_price=total / quantity,
        fiscal_total_value=total,
        internal_quantity=quantity,
        internal_unit_price=total / quantity,
        product_id=product_id,
        supplier_tax_id="12345678000195",
        supplier_product_code=product_id,
        link_status=LinkStatus.LINKED,
        origin=FieldOrigin.FISCAL_IMPORTED,
    )
    data.update(overrides)
    return EntryNoteItem(**data)


def make_state(items=None, installments=None) -> EntryNoteState:
    future = date.today() + timedelta(days=30)
    note = EntryNote(
        number="1234",
        series="1",
        supplier_id="sup-1",
        company_id=COMPANY,
        totals=NoteTotals(freight=20.0),
        items=items if items is not None else [make_item("p-gol", 2, 700.0), make_item("p-borracha", 1, 100.0)],
        installments=installments
        if installments is not None
        else [
            Installment(number="001", due_date=date(2024, 4, 10), value=410.0),
            Installment(number="002", due_date=future, value=410.0),
        ],
    )
    return EntryNoteState(note)


@pytest.mark.asyncio
async def test_post_updates_stock_with_weighted_average():
    store = build_store()
    state = make_state()
    result = await PostingService(store).post(state, "u-1")

    assert state.status == NoteStatus.POSTED
    assert result.movements == 2

    glass = await store.select_one("products", id="p-gol")
    # freight share: 20 * 700 / 800 = 17.50 -> unit cost (700 + 17.5) / 2
    assert glass["quantity"] == 12
    assert glass["purchase_price"] == pytest.approx(309.79)

    rubber = await store.select_one("products", id="p-borracha")
    assert rubber["quantity"] == 1
    assert rubber["purchase_price"] == pytest.approx(102.5)

    movements = await store.select("inventory_movements", product_id="p-gol")
    assert movements[0]["type"] == "entrada_compra"
    assert movements[0]["reason"].startswith("NF Entrada 1234 - 1")
    assert "Custo Médio: R$ 309.79" in movements[0]["reason"]


@pytest.mark.asyncio
async def test_post_persists_note_and_items():
    store = build_store()
    state = make_state()
    result = await PostingService(store).post(state, "u-1")

    note = await store.select_one("entry_notes", id=result.note_id)
    assert note["status"] == NoteStatus.POSTED.value
    assert note["numero"] == "1234"
    assert note["valor_frete"] == 20.0
    items = await store.select("entry_note_items", nota_entrada_id=result.note_id)
    assert [item["produto_id"] for item in items] == ["p-gol", "p-borracha"]


@pytest.mark.asyncio
async def test_post_creates_one_payable_per_installment():
    store = build_store()
    result = await PostingService(store).post(make_state(), "u-1")

    assert result.payables_created == 2
    assert not result.payables_failed
    payables = await store.select("accounts_payable", entry_note_id=result.note_id)
    assert [row["description"] for row in payables] == [
        "NF 1234/1 - Duplicata 001",
        "NF 1234/1 - Duplicata 002",
    ]
    # overdue installments are moved to today
    assert payables[0]["due_date"] == date.today().isoformat()
    assert payables[1]["due_date"] == (date.today() + timedelta(days=30)).isoformat()
    assert all(row["status"] == "em_aberto" for row in payables)
    assert all(row["financial_nature_id"] == "nat-compra" for row in payables)
    assert sum(row["final_value"] for row in payables) == 820.0


@pytest.mark.asyncio
async def test_payable_failure_keeps_posted_note():
    store = build_store()
    store.fail_next("accounts_payable", "insert", StoreError("timeout"))
    state = make_state()
    result = await PostingService(store).post(state, "u-1")

    assert state.status == NoteStatus.POSTED
    assert result.payables_failed
    assert result.notice == PAYABLES_FAILED_NOTICE
    assert (await store.select_one("products", id="p-gol"))["quantity"] == 12
    assert await store.select("accounts_payable") == []


@pytest.mark.asyncio
async def test_missing_product_blocks_posting_before_any_write():
    store = build_store()
    state = make_state(items=[make_item("p-gol", 2, 700.0), make_item("p-sumiu", 1, 100.0)])

    with pytest.raises(PostingBlockedError, match="Produto vinculado não encontrado"):
        await PostingService(store).post(state, "u-1")

    assert state.status != NoteStatus.POSTED
    assert await store.select("entry_notes") == []
    assert (await store.select_one("products", id="p-gol"))["quantity"] == 10
    assert await store.select("inventory_movements") == []


@pytest.mark.asyncio
async def test_inventory_failure_is_reported_and_stock_matches_movements():
    store = build_store()
    store.fail_next("inventory_movements", "insert", StoreError("timeout"))
    state = make_state()
    result = await PostingService(store).post(state, "u-1")

    assert state.status == NoteStatus.POSTED
    assert result.inventory_failed
    assert result.notice == INVENTORY_FAILED_NOTICE
    assert result.movements == 0
    gol = await store.select_one("products", id="p-gol")
    assert gol["quantity"] == 10
    assert gol["purchase_price"] == 300.0
    assert await store.select("inventory_movements") == []
    # payables do not depend on the stock update
    assert result.payables_created == 2


@pytest.mark.asyncio
async def test_ignored_items_do_not_touch_stock():
    store = build_store()
    items = [
        make_item("p-gol", 2, 700.0),
        make_item(None, 1, 100.0, link_status=LinkStatus.IGNORED, supplier_product_code="BRINDE"),
    ]
    result = await PostingService(store).post(make_state(items=items, installments=[]), "u-1")

    assert result.movements == 1
    assert result.payables_created == 0
    assert (await store.select_one("products", id="p-borracha"))["quantity"] == 0


@pytest.mark.asyncio
async def test_pending_items_block_posting():
    store = build_store()
    state = make_state(items=[make_item(None, 1, 100.0, link_status=LinkStatus.PENDING)])

    with pytest.raises(PostingBlockedError) as excinfo:
        await PostingService(store).post(state)
    assert excinfo.value.check.errors
    assert state.status == NoteStatus.DRAFT
    assert await store.select("entry_notes") == []


@pytest.mark.asyncio
async def test_warnings_need_confirmation():
    store = build_store()
    state = make_state()
    state.set_internal_quantity(0, 1)

    with pytest.raises(PostingBlockedError):
        await PostingService(store).post(state)

    result = await PostingService(store).post(state, confirm_warnings=True)
    assert result.movements == 2


@pytest.mark.asyncio
async def test_can_delete_detects_negative_stock():
    store = build_store()
    service = PostingService(store)
    result = await service.post(make_state(), "u-1")
    await store.update("products", {"quantity": 1}, id="p-gol")

    check = await service.can_delete(result.note_id)
    assert not check.can_delete
    assert check.negative_products[0]["product_id"] == "p-gol"
    assert check.negative_products[0]["resulting_stock"] == -1

    with pytest.raises(FiscalIntakeError):
        await service.delete(result.note_id)


@pytest.mark.asyncio
async def test_delete_reverts_stock():
    store = build_store()
    service = PostingService(store)
    result = await service.post(make_state(), "u-1")

    assert (await service.can_delete(result.note_id)).can_delete
    await service.delete(result.note_id, "u-2")

    assert (await store.select_one("products", id="p-gol"))["quantity"] == 10
    assert (await store.select_one("products", id="p-borracha"))["quantity"] == 0
    assert await store.select("entry_notes") == []
    assert await store.select("entry_note_items") == []
    reversals = await store.select("inventory_movements", type="saida_exclusao_nf")
    assert len(reversals) == 2


@pytest.mark.asyncio
async def test_can_delete_unknown_note():
    check = await PostingService(build_store()).can_delete("nao-existe")

    assert not check.can_delete
    assert check.message == "Nota fiscal não encontrada"
