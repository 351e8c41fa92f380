"""Dataclasses describing the core domain objects used by the intake pipelines."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional


class DocumentKind(str, Enum):
    NFE = "nfe"
    NFSE = "nfse"


class Direction(str, Enum):
    ENTRADA = "entrada"
    SAIDA = "saida"
    DEVOLUCAO = "devolucao"
    COMPLEMENTAR = "complementar"


class Purpose(str, Enum):
    NORMAL = "normal"
    COMPLEMENTARY = "complementary"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
    IMPORT = "import"


class LinkStatus(str, Enum):
    PENDING = "pending"
    LINKED = "linked"
    CREATED = "created"
    IGNORED = "ignored"


class NoteStatus(str, Enum):
    DRAFT = "Rascunho"
    TYPING = "Em Digitação"
    POSTED = "Lançada"
    CANCELLED = "Cancelada"


class FieldOrigin(str, Enum):
    USER_ENTERED = "user_entered"
    FISCAL_IMPORTED = "fiscal_imported"


class ProductLinkState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    IGNORED = "ignored"


@dataclass
class TaxRecord:
    base: float = 0.0
    rate: float = 0.0
    value: float = 0.0


@dataclass
class Address:
    street: Optional[str] = None
    number: Optional[str] = None
    complement: Optional[str] = None
    district: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


@dataclass
class Party:
    """Issuer or recipient of a fiscal document."""

    tax_id: str
    legal_name: str = ""
    trade_name: Optional[str] = None
    state_registration: Optional[str] = None
    address: Optional[Address] = None
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass
class LineItem:
    """Fields shared by every imported line, regardless of document kind."""

    supplier_code: str
    description: str
    ncm: str
    cfop: str
    unit: str
    quantity: float
    unit_price: float
    total_value: float
    discount: float = 0.0
    pis: Optional[TaxRecord] = None
    cofins: Optional[TaxRecord] = None


@dataclass
class NFeLineItem(LineItem):
    cest: Optional[str] = None
    gtin: Optional[str] = None
    origin_code: Optional[str] = None
    tax_regime_code: Optional[str] = None
    csosn: Optional[str] = None
    icms: Optional[TaxRecord] = None
    ipi: Optional[TaxRecord] = None


@dataclass
class NFSeLineItem(LineItem):
    service_list_item: Optional[str] = None
    cnae: Optional[str] = None
    municipality_code: Optional[str] = None
    iss: Optional[TaxRecord] = None


@dataclass
class InvoiceTotals:
    products_total: float = 0.0
    services_total: float = 0.0
    discounts_total: float = 0.0
    taxes_total: float = 0.0
    freight: float = 0.0
    insurance: float = 0.0
    other_expenses: float = 0.0
    grand_total: float = 0.0
    icms_value: float = 0.0
    pis_value: float = 0.0
    cofins_value: float = 0.0
    iss_value: float = 0.0


@dataclass
class Installment:
    number: str
    due_date: date
    value: float


@dataclass
class CfopShift:
    """Outbound CFOP found on an inbound document, with its inbound equivalent."""

    item_index: int
    original: str
    shifted: str


@dataclass
class ParsedInvoice:
    """Flat intermediate structure produced by the XML extractors."""

    document_kind: DocumentKind
    direction: Direction
    number: str
    series: str
    issue_date: date
    entry_date: date
    supplier: Party
    access_key: str = ""
    cfop: str = ""
    operation_nature: str = ""
    purpose: Purpose = Purpose.NORMAL
    entry_type: str = "Compra"
    document_model: str = "55"
    recipient: Optional[Party] = None
    line_items: List[LineItem] = field(default_factory=list)
    totals: InvoiceTotals = field(default_factory=InvoiceTotals)
    installments: List[Installment] = field(default_factory=list)
    cfop_shifts: List[CfopShift] = field(default_factory=list)
    raw_xml: str = ""

    @property
    def is_inbound(self) -> bool:
        return self.direction != Direction.SAIDA


@dataclass
class ValidationIssue:
    field: str
    message: str
    original_value: Any = None
    corrected_value: Any = None


@dataclass
class ValidationReport:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    corrections: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def summary(self) -> Dict[str, int]:
        return {
            "total_errors": len(self.errors),
            "total_warnings": len(self.warnings),
            "total_corrections": len(self.corrections),
        }

    def to_dict(self) -> Dict[str, Any]:
        def dump(issues: List[ValidationIssue]) -> List[Dict[str, Any]]:
            return [
                {
                    "field": issue.field,
                    "message": issue.message,
                    "original_value": issue.original_value,
                    "corrected_value": issue.corrected_value,
                }
                for issue in issues
            ]

        return {
            "is_valid": self.is_valid,
            "errors": dump(self.errors),
            "warnings": dump(self.warnings),
            "corrections": dump(self.corrections),
            "summary": self.summary(),
        }


@dataclass
class ItemTaxes:
    icms: TaxRecord = field(default_factory=TaxRecord)
    ipi: float = 0.0
    pis: float = 0.0
    cofins: float = 0.0

    @property
    def total(self) -> float:
        return self.icms.value + self.ipi + self.pis + self.cofins


@dataclass
class EntryNoteItem:
    """Line of an entry note, carrying both the fiscal and the internal view."""

    fiscal_quantity: float = 0.0
    fiscal_unit_price: float = 0.0
    fiscal_total_value: float = 0.0
    fiscal_unit: str = "UN"
    ncm: str = ""
    internal_quantity: float = 0.0
    internal_unit: str = "UN"
    conversion_factor: float = 1.0
    internal_unit_price: float = 0.0
    discount: float = 0.0
    taxes: ItemTaxes = field(default_factory=ItemTaxes)
    product_id: Optional[str] = None
    supplier_tax_id: Optional[str] = None
    supplier_product_code: Optional[str] = None
    fiscal_description: Optional[str] = None
    gtin: Optional[str] = None
    cest: Optional[str] = None
    origin_code: Optional[str] = None
    link_status: LinkStatus = LinkStatus.LINKED
    link_id: Optional[str] = None
    origin: FieldOrigin = FieldOrigin.USER_ENTERED
    stock_location: Optional[str] = None
    internal_code: Optional[str] = None

    @property
    def is_fiscal_locked(self) -> bool:
        return self.origin == FieldOrigin.FISCAL_IMPORTED

    @property
    def internal_total(self) -> float:
        return self.internal_quantity * self.internal_unit_price


@dataclass
class NoteTotals:
    products_total: float = 0.0
    discounts_total: float = 0.0
    taxes_total: float = 0.0
    freight: float = 0.0
    insurance: float = 0.0
    other_expenses: float = 0.0
    grand_total: float = 0.0


@dataclass
class EntryNote:
    number: str = ""
    series: str = ""
    entry_type: str = "Compra"
    document_type: str = "NFe"
    access_key: str = ""
    issue_date: Optional[date] = None
    entry_date: Optional[date] = None
    supplier_id: Optional[str] = None
    cfop: str = ""
    operation_nature: str = ""
    purpose: Purpose = Purpose.NORMAL
    status: NoteStatus = NoteStatus.DRAFT
    totals: NoteTotals = field(default_factory=NoteTotals)
    items: List[EntryNoteItem] = field(default_factory=list)
    installments: List[Installment] = field(default_factory=list)
    field_origins: Dict[str, FieldOrigin] = field(default_factory=dict)
    internal_notes: Optional[str] = None
    supplier_notes: Optional[str] = None
    xml: Optional[str] = None
    company_id: Optional[str] = None
    id: Optional[str] = None

    def origin_of(self, field_name: str) -> FieldOrigin:
        return self.field_origins.get(field_name, FieldOrigin.USER_ENTERED)


@dataclass
class CatalogProduct:
    id: str
    name: str
    internal_code: Optional[str] = None
    barcode: Optional[str] = None
    brand: Optional[str] = None
    description: Optional[str] = None
    ncm: Optional[str] = None
    unit: Optional[str] = None
    quantity: float = 0.0
    purchase_price: float = 0.0
    company_id: Optional[str] = None


@dataclass
class ProductLink:
    company_id: str
    supplier_tax_id: str
    supplier_product_code: str
    internal_product_id: Optional[str]
    status: ProductLinkState = ProductLinkState.ACTIVE
    fiscal_description: Optional[str] = None
    ncm: Optional[str] = None
    cest: Optional[str] = None
    gtin: Optional[str] = None
    fiscal_unit: Optional[str] = None
    id: Optional[str] = None


@dataclass
class LinkSuggestion:
    product: CatalogProduct
    match_type: str
    score: int
    reason: str


__all__ = [
    "Address",
    "CatalogProduct",
    "CfopShift",
    "Direction",
    "DocumentKind",
    "EntryNote",
    "EntryNoteItem",
    "FieldOrigin",
    "Installment",
    "InvoiceTotals",
    "ItemTaxes",
    "LineItem",
    "LinkStatus",
    "LinkSuggestion",
    "NFeLineItem",
    "NFSeLineItem",
    "NoteStatus",
    "NoteTotals",
    "ParsedInvoice",
    "Party",
    "ProductLink",
    "ProductLinkState",
    "Purpose",
    "TaxRecord",
    "ValidationIssue",
    "ValidationReport",
]
