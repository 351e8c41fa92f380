"""Resolution of supplier line items to internal catalogue products."""

from __future__ import annotations

import asyncio
import difflib
import logging
from typing import Dict, Iterable, List, Optional

from .errors import InvalidTransitionError, StoreError
from .models import (
    CatalogProduct,
    EntryNoteItem,
    LinkStatus,
    LinkSuggestion,
    ProductLink,
    ProductLinkState,
)
from .store import Row, Store
from .utils import normalize_barcode, normalize_code, normalize_text, only_digits


LOGGER = logging.getLogger(__name__)

LINKS = "supplier_product_links"
PRODUCTS = "products"


def product_from_row(row: Row) -> CatalogProduct:
    return CatalogProduct(
        id=row["id"],
        name=row.get("name") or "",
        internal_code=row.get("internal_code"),
        barcode=row.get("barcode"),
        brand=row.get("brand"),
        description=row.get("description"),
        ncm=row.get("ncm"),
        unit=row.get("unit"),
        quantity=float(row.get("quantity") or 0),
        purchase_price=float(row.get("purchase_price") or 0),
        company_id=row.get("company_id"),
    )


def link_from_row(row: Row) -> ProductLink:
    return ProductLink(
        id=row.get("id"),
        company_id=row["company_id"],
        supplier_tax_id=row["supplier_cnpj"],
        supplier_product_code=row["supplier_product_code"],
        internal_product_id=row.get("internal_product_id"),
        status=ProductLinkState(row.get("status", ProductLinkState.ACTIVE.value)),
        fiscal_description=row.get("fiscal_description"),
        ncm=row.get("ncm"),
        cest=row.get("cest"),
        gtin=row.get("gtin"),
        fiscal_unit=row.get("fiscal_unit"),
    )


class ProductLinkResolver:
    """Map supplier product codes to catalogue products for one tenant at a time.

    Stored links are applied automatically; everything else is left pending and
    only ranked suggestions are offered.  An item leaves the pending state
    through :meth:`link`, :meth:`create_and_link` or :meth:`ignore`, and comes
    back only through :meth:`reopen`.
    """

    def __init__(
        self,
        store: Store,
        *,
        suggestion_limit: int = 10,
        min_coverage: float = 0.7,
        strong_similarity: float = 0.9,
    ) -> None:
        self.store = store
        self.suggestion_limit = suggestion_limit
        self.min_coverage = min_coverage
        self.strong_similarity = strong_similarity
        self._catalog: Dict[str, List[CatalogProduct]] = {}

    # ------------------------------------------------------------------
    # Stored links
    # ------------------------------------------------------------------
    async def find_link(self, company_id: str, supplier_tax_id: str, supplier_code: str) -> Optional[ProductLink]:
        try:
            rows = await self.store.select(
                LINKS,
                limit=1,
                company_id=company_id,
                supplier_cnpj=only_digits(supplier_tax_id),
                supplier_product_code=supplier_code,
            )
        except StoreError as exc:
            if exc.code == "PGRST205":
                LOGGER.warning("Collection %s not available, item stays pending", LINKS)
                return None
            raise
        if not rows:
            return None
        link = link_from_row(rows[0])
        if link.status == ProductLinkState.INACTIVE:
            return None
        return link

    async def resolve_stored(self, items: Iterable[EntryNoteItem], company_id: str) -> List[EntryNoteItem]:
        items = list(items)
        lookups = [
            self.find_link(company_id, item.supplier_tax_id, item.supplier_product_code)
            if item.supplier_tax_id and item.supplier_product_code
            else _no_link()
            for item in items
        ]
        links = await asyncio.gather(*lookups)

        for item, link in zip(items, links):
            if link is None:
                item.link_status = LinkStatus.PENDING
                item.product_id = None
                continue
            item.link_id = link.id
            if link.status == ProductLinkState.IGNORED:
                item.link_status = LinkStatus.IGNORED
                item.product_id = None
            else:
                item.link_status = LinkStatus.LINKED
                item.product_id = link.internal_product_id

        LOGGER.info(
            "Resolved stored links for %s items (%s pending)",
            len(items),
            self.pending_count(items),
        )
        return items

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------
    async def catalog(self, company_id: str) -> List[CatalogProduct]:
        if company_id not in self._catalog:
            rows = await self.store.select(PRODUCTS, company_id=company_id)
            self._catalog[company_id] = [product_from_row(row) for row in rows]
        return self._catalog[company_id]

    def refresh_products(self, company_id: Optional[str] = None) -> None:
        if company_id is None:
            self._catalog.clear()
        else:
            self._catalog.pop(company_id, None)

    async def suggest(self, company_id: str, item: EntryNoteItem, limit: Optional[int] = None) -> List[LinkSuggestion]:
        products = await self.catalog(company_id)
        gtin = normalize_barcode(item.gtin)
        ncm = only_digits(item.ncm)
        supplier_code = normalize_code(item.supplier_product_code)
        description = normalize_text(item.fiscal_description or "")
        terms = [term for term in description.split() if len(term) > 2]

        suggestions: List[LinkSuggestion] = []
        for product in products:
            suggestion = self._score(product, supplier_code, gtin, ncm, description, terms)
            if suggestion is not None:
                suggestions.append(suggestion)

        suggestions.sort(key=lambda entry: entry.score, reverse=True)
        return suggestions[: limit or self.suggestion_limit]

    def _score(
        self,
        product: CatalogProduct,
        supplier_code: Optional[str],
        gtin: Optional[str],
        ncm: str,
        description: str,
        terms: List[str],
    ) -> Optional[LinkSuggestion]:
        # 1) Supplier code equal to our own code
        if supplier_code and normalize_code(product.internal_code) == supplier_code:
            return LinkSuggestion(product, "exact", 100, "Código do fornecedor igual ao código interno")

        # 2) GTIN against internal code or barcode
        if gtin and gtin in (normalize_barcode(product.internal_code), normalize_barcode(product.barcode)):
            return LinkSuggestion(product, "gtin", 100, "GTIN/Código de barras idêntico")

        # 3) Same NCM
        if ncm and ncm != "00000000" and only_digits(product.ncm) == ncm:
            return LinkSuggestion(product, "ncm", 70, f"NCM idêntico ({ncm})")

        # 4) Description term coverage
        if not terms:
            return None
        full_text = normalize_text(f"{product.name} {product.description or ''}")
        coverage = sum(1 for term in terms if term in full_text) / len(terms)
        if coverage < self.min_coverage:
            return None
        similarity = max(coverage, self._similarity(description, normalize_text(product.name)))
        percent = int(round(similarity * 100))
        if similarity >= self.strong_similarity:
            return LinkSuggestion(product, "description", percent, f"Descrição muito similar ({percent}%)")
        return LinkSuggestion(product, "similar", percent, f"Descrição parcialmente similar ({percent}%)")

    @staticmethod
    def _similarity(a: str, b: str) -> float:
        if not a or not b:
            return 0.0
        return difflib.SequenceMatcher(None, a, b).ratio()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    async def link(self, company_id: str, item: EntryNoteItem, product_id: str, user_id: Optional[str] = None) -> EntryNoteItem:
        self._ensure_pending(item)
        row = await self._upsert_link(company_id, item, product_id, ProductLinkState.ACTIVE, user_id)
        item.product_id = product_id
        item.link_id = row["id"]
        item.link_status = LinkStatus.LINKED
        LOGGER.info("Linked %s/%s to product %s", item.supplier_tax_id, item.supplier_product_code, product_id)
        return item

    async def create_and_link(
        self,
        company_id: str,
        item: EntryNoteItem,
        *,
        name: Optional[str] = None,
        internal_code: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> EntryNoteItem:
        """Create a catalogue product from the fiscal data of ``item`` and link it."""

        self._ensure_pending(item)
        product = await self.store.insert_one(
            PRODUCTS,
            {
                "company_id": company_id,
                "name": name or item.fiscal_description or item.supplier_product_code,
                "internal_code": normalize_code(internal_code or item.supplier_product_code),
                "barcode": normalize_barcode(item.gtin),
                "ncm": item.ncm or None,
                "unit": item.internal_unit or item.fiscal_unit,
                "quantity": 0.0,
                "purchase_price": item.fiscal_unit_price,
            },
        )
        self.refresh_products(company_id)
        row = await self._upsert_link(company_id, item, product["id"], ProductLinkState.ACTIVE, user_id)
        item.product_id = product["id"]
        item.internal_code = product["internal_code"]
        item.link_id = row["id"]
        item.link_status = LinkStatus.CREATED
        LOGGER.info("Created product %s from supplier code %s", product["id"], item.supplier_product_code)
        return item

    async def ignore(self, company_id: str, item: EntryNoteItem, user_id: Optional[str] = None) -> EntryNoteItem:
        self._ensure_pending(item)
        row = await self._upsert_link(company_id, item, None, ProductLinkState.IGNORED, user_id)
        item.product_id = None
        item.link_id = row["id"]
        item.link_status = LinkStatus.IGNORED
        LOGGER.info("Ignoring supplier code %s/%s", item.supplier_tax_id, item.supplier_product_code)
        return item

    @staticmethod
    def reopen(item: EntryNoteItem) -> EntryNoteItem:
        if item.link_status == LinkStatus.PENDING:
            raise InvalidTransitionError("Item já está pendente de vinculação.")
        item.link_status = LinkStatus.PENDING
        item.product_id = None
        item.link_id = None
        return item

    @staticmethod
    def pending_count(items: Iterable[EntryNoteItem]) -> int:
        return sum(1 for item in items if item.link_status == LinkStatus.PENDING)

    @staticmethod
    def next_pending(items: Iterable[EntryNoteItem]) -> Optional[int]:
        for index, item in enumerate(items):
            if item.link_status == LinkStatus.PENDING:
                return index
        return None

    @staticmethod
    def _ensure_pending(item: EntryNoteItem) -> None:
        if item.link_status != LinkStatus.PENDING:
            raise InvalidTransitionError(
                f"Item {item.supplier_product_code or ''} já foi resolvido ({item.link_status.value}); reabra antes de vincular."
            )
        if not item.supplier_tax_id or not item.supplier_product_code:
            raise InvalidTransitionError("Item sem CNPJ do fornecedor ou código do produto não pode ser vinculado.")

    async def _upsert_link(
        self,
        company_id: str,
        item: EntryNoteItem,
        product_id: Optional[str],
        status: ProductLinkState,
        user_id: Optional[str],
    ) -> Row:
        key = {
            "company_id": company_id,
            "supplier_cnpj": only_digits(item.supplier_tax_id),
            "supplier_product_code": item.supplier_product_code,
        }
        values = {
            "internal_product_id": product_id,
            "status": status.value,
            "fiscal_description": item.fiscal_description,
            "ncm": item.ncm or None,
            "cest": item.cest,
            "gtin": item.gtin,
            "fiscal_unit": item.fiscal_unit,
        }
        existing = await self.store.select(LINKS, limit=1, **key)
        if existing:
            updated = await self.store.update(LINKS, values, id=existing[0]["id"])
            return updated[0]
        return await self.store.insert_one(LINKS, {**key, **values, "created_by": user_id})


async def _no_link() -> None:
    return None


__all__ = ["ProductLinkResolver", "product_from_row", "link_from_row"]
