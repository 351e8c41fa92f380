"""Editable state of an entry note: dual quantities, locked fields and totals."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional

from .errors import BlockedEditError, InvalidTransitionError
from .models import (
    EntryNote,
    EntryNoteItem,
    FieldOrigin,
    LinkStatus,
    NoteStatus,
    NoteTotals,
    Purpose,
)
from .utils import only_digits, round_money


LOGGER = logging.getLogger(__name__)


LOCKED_HEADER_FIELDS = (
    "number",
    "series",
    "access_key",
    "supplier_id",
    "cfop",
    "operation_nature",
    "purpose",
    "issue_date",
)
MONETARY_HEADER_FIELDS = ("freight", "insurance", "other_expenses")
FISCAL_ITEM_FIELDS = ("fiscal_quantity", "fiscal_unit_price", "fiscal_total_value", "fiscal_unit", "ncm")
# provenance and link state change only through the link resolver or select_product
PROTECTED_ITEM_FIELDS = (
    "origin",
    "link_status",
    "product_id",
    "link_id",
    "supplier_tax_id",
    "supplier_product_code",
)

IMPORT_SERIES = (
    "10 - Importação direta",
    "11 - Importação encomenda",
    "12 - Importação conta e ordem",
)

TRANSITIONS = {
    NoteStatus.DRAFT: {NoteStatus.TYPING, NoteStatus.CANCELLED},
    NoteStatus.TYPING: {NoteStatus.POSTED, NoteStatus.CANCELLED},
    NoteStatus.POSTED: set(),
    NoteStatus.CANCELLED: set(),
}

_ITEM_FIELDS = {item_field.name for item_field in fields(EntryNoteItem)}
_NOTE_FIELDS = {note_field.name for note_field in fields(EntryNote)}


@dataclass
class PostingCheck:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def needs_confirmation(self) -> bool:
        return bool(self.warnings)


def compute_totals(
    items: Iterable[EntryNoteItem],
    *,
    freight: float = 0.0,
    insurance: float = 0.0,
    other_expenses: float = 0.0,
) -> NoteTotals:
    """Totals of a note; the fiscal value of an item wins when it is present."""

    items = list(items)
    products_total = sum(max(item.fiscal_total_value, item.internal_total) for item in items)
    taxes_total = sum(item.taxes.total for item in items)
    discounts_total = sum(item.discount for item in items)
    grand_total = products_total + taxes_total + freight + insurance + other_expenses - discounts_total
    return NoteTotals(
        products_total=round_money(products_total),
        discounts_total=round_money(discounts_total),
        taxes_total=round_money(taxes_total),
        freight=freight,
        insurance=insurance,
        other_expenses=other_expenses,
        grand_total=round_money(grand_total),
    )


def is_import_series_compatible(entry_type: str, series: str) -> bool:
    if "Importação" not in (entry_type or ""):
        return True
    return series in IMPORT_SERIES or series.split(" - ")[0] in ("10", "11", "12")


class EntryNoteState:
    """Wraps one :class:`EntryNote` and keeps its derived values consistent.

    Every mutating method recomputes the note totals before returning, so
    callers never need to ask for a recompute.  Notes start as ``Rascunho``;
    the first edit moves them to ``Em Digitação``.  A posted or cancelled note
    rejects any further mutation.
    """

    def __init__(self, note: EntryNote) -> None:
        self.note = note
        for item in self.note.items:
            self._heal(item)
        self.recompute_totals()

    @property
    def status(self) -> NoteStatus:
        return self.note.status

    @property
    def items(self) -> List[EntryNoteItem]:
        return self.note.items

    @property
    def totals(self) -> NoteTotals:
        return self.note.totals

    # ------------------------------------------------------------------
    # Status machine
    # ------------------------------------------------------------------
    def transition(self, new_status: NoteStatus) -> None:
        allowed = TRANSITIONS[self.note.status]
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Transição de '{self.note.status.value}' para '{new_status.value}' não permitida."
            )
        LOGGER.debug("Entry note %s: %s -> %s", self.note.number, self.note.status.value, new_status.value)
        self.note.status = new_status

    def cancel(self) -> None:
        self.transition(NoteStatus.CANCELLED)

    def _begin_edit(self) -> None:
        if self.note.status in (NoteStatus.POSTED, NoteStatus.CANCELLED):
            raise InvalidTransitionError(f"Nota com status '{self.note.status.value}' não pode ser alterada.")
        if self.note.status == NoteStatus.DRAFT:
            self.note.status = NoteStatus.TYPING

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------
    def set_header(self, name: str, value: Any) -> None:
        self._begin_edit()
        if name in MONETARY_HEADER_FIELDS:
            setattr(self.note.totals, name, float(value or 0))
        else:
            if name not in _NOTE_FIELDS or name in ("items", "totals", "field_origins", "status"):
                raise AttributeError(f"Campo de cabeçalho desconhecido: {name}")
            if name in LOCKED_HEADER_FIELDS and self.note.origin_of(name) == FieldOrigin.FISCAL_IMPORTED:
                raise BlockedEditError(name)
            if name == "purpose" and not isinstance(value, Purpose):
                value = Purpose(value)
            setattr(self.note, name, value)
        self.recompute_totals()

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------
    def add_item(self, item: Optional[EntryNoteItem] = None, **values: Any) -> EntryNoteItem:
        """Add a manually entered item; fiscal fields mirror the internal ones."""

        self._begin_edit()
        item = item or EntryNoteItem(**values)
        if item.origin == FieldOrigin.USER_ENTERED:
            item.link_status = LinkStatus.LINKED if item.product_id else LinkStatus.PENDING
            if not item.internal_quantity:
                item.internal_quantity = item.fiscal_quantity or (1.0 if item.fiscal_total_value else 0.0)
            if not item.internal_unit_price and item.internal_quantity:
                item.internal_unit_price = item.fiscal_unit_price or item.fiscal_total_value / item.internal_quantity
            self._mirror(item)
        self._heal(item)
        self.note.items.append(item)
        self.recompute_totals()
        return item

    def remove_item(self, index: int) -> EntryNoteItem:
        self._begin_edit()
        item = self.note.items.pop(index)
        self.recompute_totals()
        return item

    def update_item(self, index: int, **changes: Any) -> EntryNoteItem:
        item = self.note.items[index]
        for name in changes:
            if name not in _ITEM_FIELDS:
                raise AttributeError(f"Campo de item desconhecido: {name}")
            if name in PROTECTED_ITEM_FIELDS:
                raise BlockedEditError(name, f"Campo '{name}' só muda pela vinculação de produtos.")
            if name in FISCAL_ITEM_FIELDS and item.is_fiscal_locked:
                raise BlockedEditError(name)
        self._begin_edit()

        for name, value in changes.items():
            if name == "internal_quantity":
                self._apply_internal_quantity(item, float(value))
            elif name == "conversion_factor":
                self._apply_conversion_factor(item, float(value))
            else:
                setattr(item, name, value)

        if not item.is_fiscal_locked:
            if any(name in FISCAL_ITEM_FIELDS for name in changes):
                self._mirror_to_internal(item, recompute_total="fiscal_total_value" not in changes)
            else:
                self._mirror(item)
        self._heal(item)
        self.recompute_totals()
        return item

    def set_internal_quantity(self, index: int, quantity: float) -> EntryNoteItem:
        return self.update_item(index, internal_quantity=quantity)

    def set_conversion_factor(self, index: int, factor: float) -> EntryNoteItem:
        return self.update_item(index, conversion_factor=factor)

    def select_product(self, index: int, product_id: str, internal_code: Optional[str] = None) -> EntryNoteItem:
        """Direct product selection on a manual item."""

        item = self.note.items[index]
        if item.is_fiscal_locked:
            raise BlockedEditError("product_id")
        self._begin_edit()
        item.product_id = product_id
        item.internal_code = internal_code
        item.link_status = LinkStatus.LINKED
        self.recompute_totals()
        return item

    @staticmethod
    def _apply_internal_quantity(item: EntryNoteItem, quantity: float) -> None:
        item.internal_quantity = quantity
        item.conversion_factor = quantity / item.fiscal_quantity if item.fiscal_quantity > 0 else 1.0
        item.internal_unit_price = item.fiscal_total_value / quantity if quantity > 0 else 0.0

    @staticmethod
    def _apply_conversion_factor(item: EntryNoteItem, factor: float) -> None:
        item.conversion_factor = factor
        item.internal_quantity = item.fiscal_quantity * factor
        quantity = item.internal_quantity
        item.internal_unit_price = item.fiscal_total_value / quantity if quantity > 0 else 0.0

    @staticmethod
    def _mirror(item: EntryNoteItem) -> None:
        # manual items have no fiscal side of their own
        item.fiscal_quantity = item.internal_quantity
        item.fiscal_unit_price = item.internal_unit_price
        item.fiscal_total_value = round_money(item.internal_quantity * item.internal_unit_price)
        item.fiscal_unit = item.internal_unit or item.fiscal_unit
        item.conversion_factor = 1.0

    @staticmethod
    def _mirror_to_internal(item: EntryNoteItem, *, recompute_total: bool) -> None:
        if recompute_total:
            item.fiscal_total_value = round_money(item.fiscal_quantity * item.fiscal_unit_price)
        elif item.fiscal_quantity > 0:
            item.fiscal_unit_price = item.fiscal_total_value / item.fiscal_quantity
        item.internal_quantity = item.fiscal_quantity
        item.internal_unit_price = item.fiscal_unit_price
        item.internal_unit = item.fiscal_unit
        item.conversion_factor = 1.0

    @staticmethod
    def _heal(item: EntryNoteItem) -> None:
        if item.fiscal_quantity <= 0 and item.internal_quantity > 0:
            item.fiscal_quantity = item.internal_quantity
        if item.fiscal_unit_price <= 0 and item.internal_unit_price > 0:
            item.fiscal_unit_price = item.internal_unit_price
        if item.fiscal_total_value <= 0 and item.fiscal_quantity > 0 and item.fiscal_unit_price > 0:
            item.fiscal_total_value = round_money(item.fiscal_quantity * item.fiscal_unit_price)
        if not item.fiscal_unit:
            item.fiscal_unit = item.internal_unit or "UN"

    # ------------------------------------------------------------------
    # Totals and posting gate
    # ------------------------------------------------------------------
    def recompute_totals(self) -> NoteTotals:
        current = self.note.totals
        self.note.totals = compute_totals(
            self.note.items,
            freight=current.freight,
            insurance=current.insurance,
            other_expenses=current.other_expenses,
        )
        return self.note.totals

    def pending_items(self) -> List[int]:
        return [
            index
            for index, item in enumerate(self.note.items)
            if item.link_status == LinkStatus.PENDING
            or (not item.product_id and item.link_status != LinkStatus.IGNORED)
        ]

    def check_posting(self) -> PostingCheck:
        note = self.note
        check = PostingCheck()

        if note.status in (NoteStatus.POSTED, NoteStatus.CANCELLED):
            check.errors.append(f"Nota com status '{note.status.value}' não pode ser lançada.")
        if not note.number:
            check.errors.append("Número da nota é obrigatório.")
        if not note.series:
            check.errors.append("Série da nota é obrigatória.")
        if not note.supplier_id:
            check.errors.append("Fornecedor é obrigatório.")
        if not note.items:
            check.errors.append("A nota deve ter pelo menos um item.")

        pending = self.pending_items()
        if pending:
            check.errors.append(
                f"Existem {len(pending)} item(ns) pendente(s) de vinculação. "
                "Vincule, cadastre ou ignore os itens antes de lançar."
            )

        for position, item in enumerate(note.items, start=1):
            label = item.fiscal_description or item.supplier_product_code or str(position)
            if item.fiscal_quantity <= 0:
                check.errors.append(f"Item {position} ({label}): quantidade fiscal deve ser maior que zero.")
            if item.internal_quantity <= 0:
                check.errors.append(f"Item {position} ({label}): quantidade interna deve ser maior que zero.")
            elif 0 < item.internal_quantity < item.fiscal_quantity:
                check.warnings.append(
                    f"Item {position} ({label}): quantidade interna ({item.internal_quantity:g}) "
                    f"menor que a fiscal ({item.fiscal_quantity:g}). Confirma?"
                )

        if note.access_key and (len(note.access_key) != 44 or only_digits(note.access_key) != note.access_key):
            check.errors.append("Chave de acesso inválida (deve ter 44 dígitos numéricos).")

        if not is_import_series_compatible(note.entry_type, note.series):
            check.errors.append(
                f"Série '{note.series}' incompatível com o tipo de entrada '{note.entry_type}'. "
                f"Use uma das séries: {', '.join(IMPORT_SERIES)}."
            )

        return check

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.note.status.value,
            "totals": vars(self.note.totals).copy(),
            "pending": len(self.pending_items()),
            "items": len(self.note.items),
        }


__all__ = [
    "EntryNoteState",
    "PostingCheck",
    "compute_totals",
    "is_import_series_compatible",
    "LOCKED_HEADER_FIELDS",
    "FISCAL_ITEM_FIELDS",
    "MONETARY_HEADER_FIELDS",
    "IMPORT_SERIES",
]
