"""Parsers for NF-e/NFS-e XML documents and the product catalogue sheet."""

from __future__ import annotations

import logging
import re
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd
from lxml import etree

from .errors import ParseError
from .models import (
    Address,
    CatalogProduct,
    CfopShift,
    Direction,
    DocumentKind,
    Installment,
    InvoiceTotals,
    LineItem,
    NFeLineItem,
    NFSeLineItem,
    ParsedInvoice,
    Party,
    Purpose,
    TaxRecord,
)
from .utils import normalize_barcode, normalize_code, only_digits, parse_date, safe_float, strip_accents


LOGGER = logging.getLogger(__name__)


NFSE_MARKERS = ("EnviarLoteRpsEnvio", "ConsultarLoteRpsResposta", "LoteRps", "InfRps", "Rps")
NFE_MARKERS = ("infNFe", "<NFe", "NFe xmlns")

# finNFe -> (purpose, entry type, direction)
FINALITY_TABLE: Dict[str, Tuple[Purpose, str, Direction]] = {
    "1": (Purpose.NORMAL, "Compra", Direction.ENTRADA),
    "2": (Purpose.COMPLEMENTARY, "Complementar", Direction.COMPLEMENTAR),
    "3": (Purpose.ADJUSTMENT, "Ajuste", Direction.ENTRADA),
    "4": (Purpose.RETURN, "Devolução de fornecedor", Direction.DEVOLUCAO),
}

ICMS_VARIANTS = (
    "ICMS00",
    "ICMS10",
    "ICMS20",
    "ICMS30",
    "ICMS40",
    "ICMS51",
    "ICMS60",
    "ICMS70",
    "ICMS90",
    "ICMSPart",
    "ICMSST",
    "ICMSSN101",
    "ICMSSN102",
    "ICMSSN201",
    "ICMSSN202",
    "ICMSSN500",
    "ICMSSN900",
    "ICMS102",
    "ICMS201",
    "ICMS202",
    "ICMS500",
    "ICMS900",
)
PIS_VARIANTS = ("PISAliq", "PISQtde", "PISNT", "PISOutr")
COFINS_VARIANTS = ("COFINSAliq", "COFINSQtde", "COFINSNT", "COFINSOutr")
IPI_VARIANTS = ("IPITrib", "IPINT")

OUTBOUND_CFOP_RANGE = (5100, 5999)
CFOP_INBOUND_SHIFT = 1000

_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")


def _local_name(element) -> str:
    if not isinstance(element.tag, str):
        return ""
    return etree.QName(element).localname


def _case_variants(name: str) -> List[str]:
    variants = [name]
    swapped = name[:1].swapcase() + name[1:]
    if swapped != name:
        variants.append(swapped)
    return variants


class TagFinder:
    """Namespace tolerant element lookup.

    Every lookup first tries a structural query for a direct child, using the
    plain name and then its case variant (``serie``/``Serie``), in the
    document's default namespace and without namespace.  When that fails it
    scans all descendants comparing local names only, which finds tags hidden
    behind prefixes or unexpected namespaces.
    """

    def __init__(self, namespace: Optional[str] = None) -> None:
        self.namespace = namespace

    @classmethod
    def for_root(cls, root) -> "TagFinder":
        namespace = etree.QName(root).namespace if isinstance(root.tag, str) else None
        return cls(namespace)

    def find(self, node, *names: str):
        if node is None:
            return None
        for name in names:
            for variant in _case_variants(name):
                if self.namespace:
                    child = node.find(f"{{{self.namespace}}}{variant}")
                    if child is not None:
                        return child
                child = node.find(variant)
                if child is not None:
                    return child
        for name in names:
            for variant in _case_variants(name):
                for element in node.iterdescendants():
                    if _local_name(element) == variant:
                        return element
        return None

    def find_all(self, node, name: str) -> List:
        if node is None:
            return []
        return [element for element in node.iterdescendants() if _local_name(element) == name]

    def text(self, node, *names: str, default: str = "") -> str:
        element = self.find(node, *names)
        if element is None or element.text is None:
            return default
        return element.text.strip() or default

    def number(self, node, *names: str, default: float = 0.0) -> float:
        return safe_float(self.text(node, *names), default=default)


def _load_xml(xml_text) -> etree._Element:
    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False, remove_blank_text=True)
    if isinstance(xml_text, str):
        # lxml refuses str input that carries an encoding declaration
        payload = _XML_DECLARATION.sub("", xml_text.lstrip("﻿"), count=1).encode("utf-8")
    else:
        payload = xml_text
    try:
        root = etree.fromstring(payload, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise ParseError(f"XML inválido ou malformado: {exc}") from exc
    if root is None:
        raise ParseError("XML inválido ou malformado: documento vazio")
    return root


def detect_document_kind(xml_text: str) -> DocumentKind:
    """NFS-e markers win over NF-e markers, as RPS lots may embed NF-e words."""

    if any(marker in xml_text for marker in NFSE_MARKERS):
        return DocumentKind.NFSE
    if any(marker in xml_text for marker in NFE_MARKERS):
        return DocumentKind.NFE
    raise ParseError("Tipo de XML não reconhecido. Deve ser NFe ou NFSe.")


def synthesize_installment(issue_date: date, grand_total: float) -> List[Installment]:
    if grand_total <= 0:
        return []
    return [Installment(number="001", due_date=issue_date, value=grand_total)]


def outbound_to_inbound(cfop: str, outbound_range: Tuple[int, int] = OUTBOUND_CFOP_RANGE) -> Optional[str]:
    """Inbound equivalent of an outbound CFOP (5102 -> 4102), if it is one."""

    digits = only_digits(cfop)
    if not digits:
        return None
    code = int(digits)
    low, high = outbound_range
    if low <= code <= high:
        return str(code - CFOP_INBOUND_SHIFT)
    return None


class NFeParser:
    """Parser responsible for extracting :class:`ParsedInvoice` objects from NF-e XML."""

    def __init__(self, outbound_cfop_range: Tuple[int, int] = OUTBOUND_CFOP_RANGE) -> None:
        self.outbound_cfop_range = tuple(outbound_cfop_range)

    def parse(self, xml_text: str) -> ParsedInvoice:
        root = _load_xml(xml_text)
        finder = TagFinder.for_root(root)

        inf_nfe = root if _local_name(root) == "infNFe" else finder.find(root, "infNFe")
        if inf_nfe is None:
            raise ParseError("XML inválido: tag infNFe não encontrada")
        # infNFe's own namespace is the one used by its children
        finder = TagFinder.for_root(inf_nfe)

        ide = finder.find(inf_nfe, "ide")
        if ide is None:
            raise ParseError("XML inválido: tag ide não encontrada")
        emit = finder.find(inf_nfe, "emit")
        if emit is None:
            raise ParseError("XML inválido: tag emit não encontrada")

        access_key = (inf_nfe.get("Id") or "").replace("NFe", "", 1).strip()
        issue_date = parse_date(finder.text(ide, "dhEmi", "dEmi"))
        if issue_date is None:
            LOGGER.warning("NF-e %s has no issue date, using today", access_key or "?")
            issue_date = date.today()

        finality = finder.text(ide, "finNFe", default="1")
        purpose, entry_type, direction = FINALITY_TABLE.get(finality, FINALITY_TABLE["1"])

        items, shifts = self._parse_items(finder, inf_nfe, inbound=direction != Direction.SAIDA)
        document_cfop = items[0].cfop if items else finder.text(ide, "CFOP")
        totals = self._parse_totals(finder, inf_nfe)
        installments = self._parse_installments(finder, inf_nfe)
        if not installments:
            installments = synthesize_installment(issue_date, totals.grand_total)

        invoice = ParsedInvoice(
            document_kind=DocumentKind.NFE,
            direction=direction,
            number=finder.text(ide, "nNF"),
            series=finder.text(ide, "serie"),
            issue_date=issue_date,
            entry_date=issue_date,
            supplier=self._parse_supplier(finder, emit),
            access_key=access_key,
            cfop=document_cfop,
            operation_nature=finder.text(ide, "natOp"),
            purpose=purpose,
            entry_type=entry_type,
            document_model=finder.text(ide, "mod", default="55"),
            recipient=self._parse_recipient(finder, finder.find(inf_nfe, "dest")),
            line_items=items,
            totals=totals,
            installments=installments,
            cfop_shifts=shifts,
            raw_xml=xml_text if isinstance(xml_text, str) else "",
        )
        LOGGER.debug("Parsed NF-e %s/%s with %s items", invoice.number, invoice.series, len(items))
        return invoice

    def _parse_supplier(self, finder: TagFinder, emit) -> Party:
        address_node = finder.find(emit, "enderEmit")
        return Party(
            tax_id=only_digits(finder.text(emit, "CNPJ") or finder.text(emit, "CPF")),
            legal_name=finder.text(emit, "xNome"),
            trade_name=finder.text(emit, "xFant") or None,
            state_registration=finder.text(emit, "IE") or None,
            address=self._parse_address(finder, address_node),
            phone=finder.text(address_node, "fone") or None,
        )

    def _parse_recipient(self, finder: TagFinder, dest) -> Optional[Party]:
        if dest is None:
            return None
        return Party(
            tax_id=only_digits(finder.text(dest, "CNPJ") or finder.text(dest, "CPF")),
            legal_name=finder.text(dest, "xNome"),
            state_registration=finder.text(dest, "IE") or None,
            address=self._parse_address(finder, finder.find(dest, "enderDest")),
            email=finder.text(dest, "email") or None,
        )

    @staticmethod
    def _parse_address(finder: TagFinder, node) -> Optional[Address]:
        if node is None:
            return None
        return Address(
            street=finder.text(node, "xLgr") or None,
            number=finder.text(node, "nro") or None,
            complement=finder.text(node, "xCpl") or None,
            district=finder.text(node, "xBairro") or None,
            city=finder.text(node, "xMun") or None,
            state=finder.text(node, "UF") or None,
            zip_code=only_digits(finder.text(node, "CEP")) or None,
        )

    def _parse_items(self, finder: TagFinder, inf_nfe, *, inbound: bool) -> Tuple[List[LineItem], List[CfopShift]]:
        items: List[LineItem] = []
        shifts: List[CfopShift] = []
        document_cfop = ""

        for det in finder.find_all(inf_nfe, "det"):
            prod = finder.find(det, "prod")
            if prod is None:
                LOGGER.warning("Skipping det without prod node (nItem=%s)", det.get("nItem"))
                continue
            imposto = finder.find(det, "imposto")

            cfop = finder.text(prod, "CFOP")
            if not document_cfop:
                document_cfop = cfop
            cfop = cfop or document_cfop

            icms_node, icms = self._read_tax(finder, imposto, "ICMS", ICMS_VARIANTS, "pICMS", "vICMS")
            _, pis = self._read_tax(finder, imposto, "PIS", PIS_VARIANTS, "pPIS", "vPIS")
            _, cofins = self._read_tax(finder, imposto, "COFINS", COFINS_VARIANTS, "pCOFINS", "vCOFINS")
            _, ipi = self._read_tax(finder, imposto, "IPI", IPI_VARIANTS, "pIPI", "vIPI")

            quantity = finder.number(prod, "qCom")
            unit_price = finder.number(prod, "vUnCom")
            item = NFeLineItem(
                supplier_code=finder.text(prod, "cProd"),
                description=finder.text(prod, "xProd"),
                ncm=finder.text(prod, "NCM"),
                cfop=cfop,
                unit=finder.text(prod, "uCom", default="UN"),
                quantity=quantity,
                unit_price=unit_price,
                total_value=finder.number(prod, "vProd", default=quantity * unit_price),
                discount=finder.number(prod, "vDesc"),
                pis=pis,
                cofins=cofins,
                cest=finder.text(prod, "CEST") or None,
                gtin=normalize_barcode(finder.text(prod, "cEAN") or finder.text(prod, "cEANTrib")),
                origin_code=finder.text(icms_node, "orig") or None,
                tax_regime_code=finder.text(icms_node, "CST", "CSOSN") or None,
                csosn=finder.text(icms_node, "CSOSN") or None,
                icms=icms,
                ipi=ipi,
            )

            shifted = outbound_to_inbound(item.cfop, self.outbound_cfop_range) if inbound else None
            if shifted:
                shifts.append(CfopShift(item_index=len(items), original=item.cfop, shifted=shifted))
            items.append(item)

        return items, shifts

    @staticmethod
    def _read_tax(finder: TagFinder, imposto, group: str, variants: Iterable[str], rate_tag: str, value_tag: str):
        """Return the first regime specific node found in ``group`` and its values."""

        group_node = finder.find(imposto, group)
        if group_node is None:
            return None, None
        for variant in variants:
            node = finder.find(group_node, variant)
            if node is not None:
                record = TaxRecord(
                    base=finder.number(node, "vBC", "vAliqProd"),
                    rate=finder.number(node, rate_tag),
                    value=finder.number(node, value_tag),
                )
                return node, record
        return None, None

    @staticmethod
    def _parse_totals(finder: TagFinder, inf_nfe) -> InvoiceTotals:
        icms_tot = finder.find(finder.find(inf_nfe, "total"), "ICMSTot")
        if icms_tot is None:
            LOGGER.warning("NF-e without ICMSTot block, totals default to zero")
            return InvoiceTotals()
        icms_value = finder.number(icms_tot, "vICMS")
        pis_value = finder.number(icms_tot, "vPIS")
        cofins_value = finder.number(icms_tot, "vCOFINS")
        return InvoiceTotals(
            products_total=finder.number(icms_tot, "vProd"),
            discounts_total=finder.number(icms_tot, "vDesc"),
            taxes_total=icms_value + pis_value + cofins_value,
            freight=finder.number(icms_tot, "vFrete"),
            insurance=finder.number(icms_tot, "vSeg"),
            other_expenses=finder.number(icms_tot, "vOutro"),
            grand_total=finder.number(icms_tot, "vNF"),
            icms_value=icms_value,
            pis_value=pis_value,
            cofins_value=cofins_value,
        )

    @staticmethod
    def _parse_installments(finder: TagFinder, inf_nfe) -> List[Installment]:
        installments: List[Installment] = []
        for dup in finder.find_all(finder.find(inf_nfe, "cobr"), "dup"):
            number = finder.text(dup, "nDup")
            due_date = parse_date(finder.text(dup, "dVenc"))
            value = finder.number(dup, "vDup")
            if number and due_date and value > 0:
                installments.append(Installment(number=number, due_date=due_date, value=value))
            else:
                LOGGER.debug("Dropping incomplete duplicata %s", number or "?")
        return installments


class NFSeParser:
    """Parser for ABRASF style RPS/NFS-e documents."""

    def parse(self, xml_text: str) -> ParsedInvoice:
        root = _load_xml(xml_text)
        finder = TagFinder.for_root(root)

        inf_rps = self._resolve_inf_rps(finder, root)
        if inf_rps is None:
            raise ParseError(
                "InfRps não encontrado no XML. Estrutura esperada: "
                "EnviarLoteRpsEnvio > LoteRps > ListaRps > Rps > InfRps"
            )

        provider = finder.find(inf_rps, "Prestador")
        provider_tax_id = only_digits(finder.text(provider, "Cnpj"))
        municipal_registration = finder.text(provider, "InscricaoMunicipal")
        if not provider_tax_id:
            lot = finder.find(root, "LoteRps")
            provider_tax_id = only_digits(finder.text(lot, "Cnpj"))
            municipal_registration = finder.text(lot, "InscricaoMunicipal") or municipal_registration
        if not provider_tax_id:
            raise ParseError("CNPJ do prestador não encontrado no XML.")

        identification = finder.find(inf_rps, "IdentificacaoRps")
        service = finder.find(inf_rps, "Servico")
        values = finder.find(service, "Valores")

        issue_date = parse_date(finder.text(inf_rps, "DataEmissao")) or date.today()
        services_value = finder.number(values, "ValorServicos")
        iss_value = finder.number(values, "ValorIss")
        pis_value = finder.number(values, "ValorPis")
        cofins_value = finder.number(values, "ValorCofins")
        rate = finder.number(values, "Aliquota")
        # ABRASF 1.0 sends the ISS rate as a fraction (0.05), 2.x as a percentage
        if 0 < rate <= 1:
            rate *= 100

        description = finder.text(service, "Discriminacao", default="Serviço prestado")
        item = NFSeLineItem(
            supplier_code=finder.text(service, "ItemListaServico", default="1401"),
            description=description,
            ncm="00000000",
            cfop="",
            unit="UN",
            quantity=1.0,
            unit_price=services_value,
            total_value=services_value,
            pis=TaxRecord(base=services_value, rate=0.0, value=pis_value),
            cofins=TaxRecord(base=services_value, rate=0.0, value=cofins_value),
            service_list_item=finder.text(service, "ItemListaServico") or None,
            cnae=finder.text(service, "CodigoCnae") or None,
            municipality_code=finder.text(service, "CodigoMunicipio") or None,
            iss=TaxRecord(base=finder.number(values, "BaseCalculo", default=services_value), rate=rate, value=iss_value),
        )

        totals = InvoiceTotals(
            services_total=services_value,
            taxes_total=iss_value + pis_value + cofins_value,
            grand_total=services_value,
            pis_value=pis_value,
            cofins_value=cofins_value,
            iss_value=iss_value,
        )

        invoice = ParsedInvoice(
            document_kind=DocumentKind.NFSE,
            direction=Direction.ENTRADA,
            number=finder.text(identification, "Numero", default="0"),
            series=finder.text(identification, "Serie", default="A"),
            issue_date=issue_date,
            entry_date=issue_date,
            supplier=Party(
                tax_id=provider_tax_id,
                legal_name=finder.text(provider, "RazaoSocial") or f"Fornecedor {provider_tax_id[:8]}",
                state_registration=municipal_registration or None,
            ),
            operation_nature=description,
            entry_type="Serviço tomado (NFS-e)",
            document_model="SE",
            recipient=self._parse_taker(finder, finder.find(inf_rps, "Tomador")),
            line_items=[item],
            totals=totals,
            installments=synthesize_installment(issue_date, services_value),
            raw_xml=xml_text if isinstance(xml_text, str) else "",
        )
        LOGGER.debug("Parsed NFS-e %s/%s from provider %s", invoice.number, invoice.series, provider_tax_id)
        return invoice

    @staticmethod
    def _resolve_inf_rps(finder: TagFinder, root):
        # 1) EnviarLoteRpsEnvio > LoteRps > ListaRps > Rps > InfRps
        lot = root if _local_name(root) == "LoteRps" else finder.find(root, "LoteRps")
        rps_list = finder.find(lot, "ListaRps")
        rps = finder.find(rps_list, "Rps")
        inf_rps = finder.find(rps, "InfRps")
        if inf_rps is not None:
            return inf_rps
        # 2) Rps > InfRps
        rps = root if _local_name(root) == "Rps" else finder.find(root, "Rps")
        inf_rps = finder.find(rps, "InfRps")
        if inf_rps is not None:
            return inf_rps
        # 3) bare InfRps
        return root if _local_name(root) == "InfRps" else finder.find(root, "InfRps")

    @staticmethod
    def _parse_taker(finder: TagFinder, taker) -> Optional[Party]:
        if taker is None:
            return None
        identification = finder.find(finder.find(taker, "IdentificacaoTomador"), "CpfCnpj")
        address = finder.find(taker, "Endereco")
        return Party(
            tax_id=only_digits(finder.text(identification, "Cpf") or finder.text(identification, "Cnpj")),
            legal_name=finder.text(taker, "RazaoSocial"),
            address=Address(
                street=finder.text(address, "Endereco") or None,
                number=finder.text(address, "Numero") or None,
                district=finder.text(address, "Bairro") or None,
                city=finder.text(address, "CodigoMunicipio") or None,
                state=finder.text(address, "Uf") or None,
                zip_code=only_digits(finder.text(address, "Cep")) or None,
            )
            if address is not None
            else None,
        )


def parse_invoice(xml_text: str, *, outbound_cfop_range: Tuple[int, int] = OUTBOUND_CFOP_RANGE) -> ParsedInvoice:
    """Detect the document kind and run the matching extractor."""

    if not xml_text or not xml_text.strip():
        raise ParseError("Arquivo XML vazio.")
    kind = detect_document_kind(xml_text)
    if kind == DocumentKind.NFSE:
        return NFSeParser().parse(xml_text)
    return NFeParser(outbound_cfop_range).parse(xml_text)


def _sanitise_column(name: str) -> str:
    return "".join(char.lower() if char.isalnum() else "_" for char in strip_accents(name)).strip("_")


class CatalogLoader:
    """Helper responsible for reading the internal product catalogue sheet."""

    COLUMN_MAPPING = {
        "id": "id",
        "codigo": "internal_code",
        "cod": "internal_code",
        "codigo_interno": "internal_code",
        "sku": "internal_code",
        "descricao": "name",
        "descricao_do_produto": "name",
        "nome": "name",
        "name": "name",
        "ean13": "barcode",
        "ean": "barcode",
        "gtin": "barcode",
        "codigo_barras": "barcode",
        "marca": "brand",
        "fabricante": "brand",
        "unid": "unit",
        "unid_": "unit",
        "unidade": "unit",
        "ncm": "ncm",
        "estoque": "quantity",
        "quantidade": "quantity",
        "custo": "purchase_price",
        "preco_custo": "purchase_price",
        "observacao": "description",
    }

    def __init__(self, path: Path, sheet_name=0) -> None:
        self.path = Path(path)
        self.sheet_name = sheet_name

    def load_dataframe(self) -> pd.DataFrame:
        if self.path.suffix.lower() == ".csv":
            df = pd.read_csv(self.path, dtype=str)
        else:
            df = pd.read_excel(self.path, sheet_name=self.sheet_name, engine="openpyxl", dtype=str)
        df.columns = [_sanitise_column(str(col)) for col in df.columns]
        return df

    def to_products(self, company_id: Optional[str] = None) -> List[CatalogProduct]:
        df = self.load_dataframe()
        products: List[CatalogProduct] = []
        for _, row in df.iterrows():
            data = {self.COLUMN_MAPPING.get(col, col): row[col] for col in row.index}
            data = {key: (None if pd.isna(value) else str(value).strip()) for key, value in data.items()}

            internal_code = normalize_code(data.get("internal_code"))
            if not internal_code:
                continue

            products.append(
                CatalogProduct(
                    id=data.get("id") or internal_code,
                    name=data.get("name") or internal_code,
                    internal_code=internal_code,
                    barcode=normalize_barcode(data.get("barcode")),
                    brand=data.get("brand") or None,
                    description=data.get("description") or None,
                    ncm=only_digits(data.get("ncm")) or None,
                    unit=data.get("unit") or None,
                    quantity=safe_float(data.get("quantity")),
                    purchase_price=safe_float(data.get("purchase_price")),
                    company_id=company_id,
                )
            )

        LOGGER.info("Loaded %s products from %s", len(products), self.path)
        return products


__all__ = [
    "TagFinder",
    "NFeParser",
    "NFSeParser",
    "CatalogLoader",
    "parse_invoice",
    "detect_document_kind",
    "outbound_to_inbound",
    "synthesize_installment",
    "FINALITY_TABLE",
]
