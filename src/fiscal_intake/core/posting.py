"""Posting of entry notes to the inventory and financial ledgers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from .entry_note import EntryNoteState, PostingCheck
from .errors import FiscalIntakeError, PostingBlockedError, StoreError
from .models import EntryNote, EntryNoteItem, LinkStatus, NoteStatus
from .store import Row, Store
from .utils import round_money


LOGGER = logging.getLogger(__name__)

PAYABLES_FAILED_NOTICE = "Nota lançada, mas houve erro ao criar contas a pagar. Verifique manualmente."
INVENTORY_FAILED_NOTICE = "Nota lançada, mas houve erro ao atualizar o estoque. Verifique as movimentações manualmente."


@dataclass
class PostingResult:
    note_id: str
    movements: int = 0
    payables_created: int = 0
    inventory_failed: bool = False
    payables_failed: bool = False
    notice: Optional[str] = None

    def add_notice(self, message: str) -> None:
        self.notice = f"{self.notice} {message}" if self.notice else message


@dataclass
class DeleteCheck:
    can_delete: bool
    message: str
    negative_products: List[Dict[str, Any]] = field(default_factory=list)


def note_to_row(note: EntryNote, user_id: Optional[str] = None) -> Row:
    totals = note.totals
    return {
        "company_id": note.company_id,
        "numero": note.number,
        "serie": note.series,
        "chave_acesso": note.access_key or None,
        "tipo_entrada": note.entry_type,
        "tipo_documento": note.document_type,
        "fornecedor_id": note.supplier_id,
        "data_emissao": note.issue_date.isoformat() if note.issue_date else None,
        "data_entrada": note.entry_date.isoformat() if note.entry_date else None,
        "cfop": note.cfop,
        "natureza_operacao": note.operation_nature,
        "finalidade": note.purpose.value,
        "status": note.status.value,
        "valor_total_produtos": totals.products_total,
        "valor_desconto": totals.discounts_total,
        "valor_impostos": totals.taxes_total,
        "valor_frete": totals.freight,
        "valor_seguro": totals.insurance,
        "outras_despesas": totals.other_expenses,
        "valor_total_nota": totals.grand_total,
        "origens_campos": {name: origin.value for name, origin in note.field_origins.items()},
        "observacoes_internas": note.internal_notes,
        "observacoes_fornecedor": note.supplier_notes,
        "xml_nfe": note.xml,
        "created_by": user_id,
    }


def item_to_row(item: EntryNoteItem, note_id: str) -> Row:
    return {
        "nota_entrada_id": note_id,
        "produto_id": item.product_id,
        "codigo_interno": item.internal_code,
        "ncm": item.ncm,
        "unidade": item.fiscal_unit,
        "quantidade": item.fiscal_quantity,
        "valor_unitario": item.fiscal_unit_price,
        "total": item.fiscal_total_value,
        "desconto": item.discount,
        "quantidade_interna": item.internal_quantity,
        "unidade_interna": item.internal_unit,
        "fator_conversao": item.conversion_factor,
        "valor_unitario_interno": item.internal_unit_price,
        "icms_base": item.taxes.icms.base,
        "icms_aliquota": item.taxes.icms.rate,
        "icms_valor": item.taxes.icms.value,
        "ipi": item.taxes.ipi,
        "pis": item.taxes.pis,
        "cofins": item.taxes.cofins,
        "supplier_cnpj": item.supplier_tax_id,
        "supplier_product_code": item.supplier_product_code,
        "descricao_fiscal": item.fiscal_description,
        "gtin": item.gtin,
        "cest": item.cest,
        "origem": item.origin_code,
        "link_status": item.link_status.value,
        "link_id": item.link_id,
        "origem_dados": item.origin.value,
        "local_estoque": item.stock_location,
    }


class PostingService:
    """Apply the ledger side effects of an entry note.

    Linked products are checked before anything is written.  Posting is not
    transactional across ledgers: once the note is posted, a failure while
    updating stock or creating payables is reported through
    :attr:`PostingResult.inventory_failed` or :attr:`PostingResult.payables_failed`
    instead of undoing the writes already done.
    """

    def __init__(
        self,
        store: Store,
        *,
        purchase_nature_code: str = "4.01",
        payable_status: str = "em_aberto",
    ) -> None:
        self.store = store
        self.purchase_nature_code = purchase_nature_code
        self.payable_status = payable_status

    async def post(self, state: EntryNoteState, user_id: Optional[str] = None, confirm_warnings: bool = False) -> PostingResult:
        check = state.check_posting()
        if not check.ok:
            raise PostingBlockedError(check)
        if check.needs_confirmation and not confirm_warnings:
            raise PostingBlockedError(check)

        note = state.note
        products = await self._load_products(note)

        if note.status == NoteStatus.DRAFT:
            state.transition(NoteStatus.TYPING)
        note_id = await self._persist(note, user_id)

        state.transition(NoteStatus.POSTED)
        await self.store.update("entry_notes", {"status": NoteStatus.POSTED.value}, id=note_id)
        LOGGER.info("Entry note %s/%s posted (%s)", note.number, note.series, note_id)

        result = PostingResult(note_id=note_id)
        await self._apply_inventory(note, products, user_id, result)

        try:
            result.payables_created = await self._create_payables(note, user_id)
        except StoreError:
            LOGGER.exception("Failed to create payables for entry note %s/%s", note.number, note.series)
            result.payables_failed = True
            result.add_notice(PAYABLES_FAILED_NOTICE)
        return result

    async def _load_products(self, note: EntryNote) -> Dict[str, Row]:
        """Products of every stocked item; a missing one blocks the posting."""

        wanted = {item.product_id for item in _stocked(note)}
        rows = await self.store.select_in("products", "id", wanted) if wanted else []
        products = {row["id"]: row for row in rows}
        missing = [
            item.fiscal_description or item.supplier_product_code or item.product_id
            for item in _stocked(note)
            if item.product_id not in products
        ]
        if missing:
            raise PostingBlockedError(
                PostingCheck(errors=[f"Produto vinculado não encontrado: {', '.join(map(str, missing))}."])
            )
        return products

    async def _persist(self, note: EntryNote, user_id: Optional[str]) -> str:
        row = note_to_row(note, user_id)
        if note.id:
            await self.store.update("entry_notes", row, id=note.id)
            await self.store.delete("entry_note_items", nota_entrada_id=note.id)
        else:
            stored = await self.store.insert_one("entry_notes", row)
            note.id = stored["id"]
        if note.items:
            await self.store.insert("entry_note_items", [item_to_row(item, note.id) for item in note.items])
        return note.id

    async def _apply_inventory(
        self, note: EntryNote, products: Dict[str, Row], user_id: Optional[str], result: PostingResult
    ) -> None:
        """Stock update and movement are written together for each item.

        A store failure stops the loop; the items already applied keep their
        movement and the failure is reported through ``result``.
        """

        stocked = _stocked(note)
        items_total = sum(item.fiscal_total_value for item in stocked)
        expenses = note.totals.freight + note.totals.other_expenses

        for item in stocked:
            try:
                await self._stock_item(note, item, products[item.product_id], items_total, expenses, user_id)
            except StoreError:
                LOGGER.exception(
                    "Inventory update failed for note %s/%s at product %s", note.number, note.series, item.product_id
                )
                result.inventory_failed = True
                result.add_notice(INVENTORY_FAILED_NOTICE)
                break
            result.movements += 1
        LOGGER.debug("Applied %s inventory movements for note %s", result.movements, note.id)

    async def _stock_item(
        self,
        note: EntryNote,
        item: EntryNoteItem,
        product: Row,
        items_total: float,
        expenses: float,
        user_id: Optional[str],
    ) -> None:
        quantity = item.internal_quantity
        current_quantity = float(product.get("quantity") or 0)
        current_price = float(product.get("purchase_price") or 0)

        unit_cost = item.internal_unit_price
        if items_total > 0 and expenses > 0:
            share = expenses * item.fiscal_total_value / items_total
            unit_cost = (item.fiscal_total_value + share) / quantity

        new_quantity = current_quantity + quantity
        if new_quantity > 0:
            average = (current_quantity * current_price + quantity * unit_cost) / new_quantity
        else:
            average = unit_cost

        await self.store.update(
            "products",
            {"quantity": new_quantity, "purchase_price": round_money(average)},
            id=item.product_id,
        )

        reason = f"NF Entrada {note.number} - {note.series}"
        if item.fiscal_quantity and item.fiscal_quantity != quantity:
            reason += f" (Fiscal: {item.fiscal_quantity:g}, Interna: {quantity:g})"
        reason += f" | Custo Unit: R$ {unit_cost:.2f} | Custo Médio: R$ {average:.2f}"
        try:
            await self.store.insert_one(
                "inventory_movements",
                {
                    "company_id": note.company_id,
                    "product_id": item.product_id,
                    "type": "entrada_compra",
                    "quantity": quantity,
                    "reason": reason,
                    "reference_id": note.id,
                    "reference_type": "nf_entrada",
                    "user_id": user_id,
                },
            )
        except StoreError:
            # no stock change without its movement
            await self.store.update(
                "products",
                {"quantity": current_quantity, "purchase_price": current_price},
                id=item.product_id,
            )
            raise

        # the same product may appear on later lines
        product["quantity"] = new_quantity
        product["purchase_price"] = round_money(average)

    async def _nature_id(self, company_id: Optional[str]) -> Optional[str]:
        rows = await self.store.select("financial_natures", limit=1, company_id=company_id, code=self.purchase_nature_code)
        if not rows:
            LOGGER.warning("Financial nature %s not found, payables created without it", self.purchase_nature_code)
            return None
        return rows[0]["id"]

    async def _create_payables(self, note: EntryNote, user_id: Optional[str]) -> int:
        if not note.installments:
            return 0
        today = date.today()
        nature_id = await self._nature_id(note.company_id)
        rows = []
        for installment in note.installments:
            value = round_money(installment.value)
            rows.append(
                {
                    "company_id": note.company_id,
                    "supplier_id": note.supplier_id,
                    "entry_note_id": note.id,
                    "description": f"NF {note.number}/{note.series} - Duplicata {installment.number}",
                    "document_number": f"{note.number}-{installment.number}",
                    "launch_date": today.isoformat(),
                    "due_date": max(installment.due_date, today).isoformat(),
                    "original_value": value,
                    "final_value": value,
                    "paid_value": 0.0,
                    "status": self.payable_status,
                    "financial_nature_id": nature_id,
                    "created_by": user_id,
                }
            )
        await self.store.insert("accounts_payable", rows)
        LOGGER.info("Created %s payables for note %s/%s", len(rows), note.number, note.series)
        return len(rows)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    async def can_delete(self, note_id: str) -> DeleteCheck:
        notes = await self.store.select("entry_notes", limit=1, id=note_id)
        if not notes:
            return DeleteCheck(False, "Nota fiscal não encontrada")
        note = notes[0]
        if note.get("status") != NoteStatus.POSTED.value:
            return DeleteCheck(True, "NF não está lançada, pode ser excluída")

        negative = []
        for item, product in await self._stocked_items(note_id):
            quantity = _stock_quantity(item)
            current = float(product.get("quantity") or 0)
            if current - quantity < 0:
                negative.append(
                    {
                        "product_id": product["id"],
                        "product_name": product.get("name") or "Produto sem nome",
                        "current_stock": current,
                        "quantity_to_remove": quantity,
                        "resulting_stock": current - quantity,
                    }
                )

        if negative:
            names = ", ".join(entry["product_name"] for entry in negative)
            return DeleteCheck(
                False,
                f"Não é possível excluir esta NF. O estoque ficaria negativo para os seguintes produtos: {names}. "
                "Alguns itens desta NF já foram vendidos.",
                negative,
            )
        return DeleteCheck(True, "NF pode ser excluída sem deixar estoque negativo")

    async def delete(self, note_id: str, user_id: Optional[str] = None) -> None:
        check = await self.can_delete(note_id)
        if not check.can_delete:
            raise FiscalIntakeError(check.message)

        note = await self.store.select_one("entry_notes", id=note_id)
        if note.get("status") == NoteStatus.POSTED.value:
            for item, _ in await self._stocked_items(note_id):
                quantity = _stock_quantity(item)
                product = await self.store.select_one("products", id=item["produto_id"])
                await self.store.update(
                    "products", {"quantity": float(product.get("quantity") or 0) - quantity}, id=product["id"]
                )
                await self.store.insert_one(
                    "inventory_movements",
                    {
                        "company_id": note.get("company_id"),
                        "product_id": product["id"],
                        "type": "saida_exclusao_nf",
                        "quantity": quantity,
                        "reason": f"Exclusão NF Entrada {note.get('numero')}/{note.get('serie')} - Reversão de entrada",
                        "reference_id": note_id,
                        "reference_type": "nf_entrada",
                        "user_id": user_id,
                    },
                )

        await self.store.delete("entry_note_items", nota_entrada_id=note_id)
        await self.store.delete("entry_notes", id=note_id)
        LOGGER.info("Entry note %s deleted", note_id)

    async def _stocked_items(self, note_id: str) -> List[tuple]:
        items = await self.store.select("entry_note_items", nota_entrada_id=note_id)
        items = [
            item
            for item in items
            if item.get("produto_id") and item.get("link_status") != LinkStatus.IGNORED.value and _stock_quantity(item) > 0
        ]
        products = await self.store.select_in("products", "id", [item["produto_id"] for item in items])
        by_id = {product["id"]: product for product in products}
        return [(item, by_id[item["produto_id"]]) for item in items if item["produto_id"] in by_id]


def _stocked(note: EntryNote) -> List[EntryNoteItem]:
    return [item for item in note.items if item.link_status != LinkStatus.IGNORED]


def _stock_quantity(item_row: Row) -> float:
    quantity = item_row.get("quantidade_interna")
    if quantity is None:
        quantity = item_row.get("quantidade")
    return float(quantity or 0)


__all__ = [
    "PostingService",
    "PostingResult",
    "DeleteCheck",
    "INVENTORY_FAILED_NOTICE",
    "PAYABLES_FAILED_NOTICE",
    "note_to_row",
    "item_to_row",
]
