"""OFX bank statement parsing and reconciliation against open titles.

OFX files produced by Brazilian banks are frequently SGML rather than XML
(unclosed leaf tags, stray ampersands), so the statement is read with a
tolerant tag scanner instead of an XML parser.  Every pattern used here is
linear: leaf tags are matched with negated character classes only.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from .errors import ParseError, ReconciliationError, StoreError
from .store import Store
from .utils import money_equals, safe_float


LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024

_LEAF_TAG = re.compile(r"<([A-Za-z0-9.]+)>([^<\r\n]*)")
_TRANSACTION_SPLIT = re.compile(r"<STMTTRN>", re.IGNORECASE)


class TransactionStatus(str, Enum):
    NEW = "novo"
    DUPLICATED = "duplicado"
    RECONCILED = "conciliado"


class MatchType(str, Enum):
    PAYABLE = "payable"
    RECEIVABLE = "receivable"
    NONE = "none"


CREDIT = "CREDIT"
DEBIT = "DEBIT"

# (keywords, category); first hit wins
CREDIT_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("PIX", "TRANSF"), "Recebimento Cliente"),
    (("DEPOSITO", "DEP"), "Entrada"),
    (("RECEBIMENTO",), "Contas a receber"),
)
DEBIT_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("PIX",), "Pagamento"),
    (("TAR", "TAXA", "CESTA"), "Taxas"),
    (("IOF",), "Impostos"),
    (("SAQUE",), "Saque"),
    (("CARTAO",), "Pagamento cartão"),
    (("TED", "DOC"), "Transferência"),
    (("PAGAMENTO",), "Contas a pagar"),
)
CREDIT_FALLBACK = "Receita Diversa"
DEBIT_FALLBACK = "Despesa Diversa"


@dataclass
class OFXTransaction:
    fitid: str
    type: str
    posted_at: date
    amount: float
    description: str
    memo: Optional[str] = None
    bank_type: Optional[str] = None
    category: Optional[str] = None
    status: TransactionStatus = TransactionStatus.NEW
    original_index: int = 0
    match_type: MatchType = MatchType.NONE
    match_id: Optional[str] = None
    match_description: Optional[str] = None

    @property
    def is_credit(self) -> bool:
        return self.type == CREDIT


@dataclass
class OFXImportReport:
    transactions: List[OFXTransaction] = field(default_factory=list)
    total_entries: float = 0.0
    total_exits: float = 0.0
    net_change: float = 0.0
    processed_count: int = 0
    duplicates_count: int = 0
    new_count: int = 0
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    bank_id: Optional[str] = None
    account_id: Optional[str] = None
    is_valid: bool = False
    alerts: List[str] = field(default_factory=list)

    def refresh(self) -> "OFXImportReport":
        """Recompute the aggregate fields from :attr:`transactions`."""

        transactions = self.transactions
        self.total_entries = round(sum(t.amount for t in transactions if t.is_credit), 2)
        self.total_exits = round(sum(abs(t.amount) for t in transactions if not t.is_credit), 2)
        # net movement of the file, not the account balance
        self.net_change = round(self.total_entries - self.total_exits, 2)
        self.processed_count = len(transactions)
        self.new_count = sum(1 for t in transactions if t.status == TransactionStatus.NEW)
        self.duplicates_count = self.processed_count - self.new_count
        dates = [t.posted_at for t in transactions]
        self.period_start = min(dates) if dates else None
        self.period_end = max(dates) if dates else None
        self.is_valid = bool(transactions)
        return self

    def new_transactions(self) -> List[OFXTransaction]:
        return [t for t in self.transactions if t.status == TransactionStatus.NEW]

    def to_dataframe(self) -> pd.DataFrame:
        columns = [
            "fitid",
            "posted_at",
            "type",
            "amount",
            "description",
            "category",
            "status",
            "match_type",
            "match_id",
            "match_description",
        ]
        rows = []
        for transaction in self.transactions:
            data = asdict(transaction)
            data["status"] = transaction.status.value
            data["match_type"] = transaction.match_type.value
            rows.append({column: data[column] for column in columns})
        return pd.DataFrame(rows, columns=columns)

    def to_export_payload(self, account_id: str) -> Dict[str, Any]:
        kinds = {MatchType.NONE: "nenhum", MatchType.PAYABLE: "pagar", MatchType.RECEIVABLE: "receber"}
        return {
            "conta_id": account_id,
            "periodo": {
                "inicio": self.period_start.isoformat() if self.period_start else "",
                "fim": self.period_end.isoformat() if self.period_end else "",
            },
            "transacoes": [
                {
                    "data": t.posted_at.isoformat(),
                    "descricao": t.description,
                    "tipo": "credito" if t.is_credit else "debito",
                    "valor": t.amount,
                    "categoria_sugerida": t.category,
                    "identificador_ofx": t.fitid,
                    "status": t.status.value,
                    "vinculo": {"tipo": kinds[t.match_type], "id_referencia": t.match_id or ""},
                }
                for t in self.transactions
            ],
        }


def _leaf_tags(block: str) -> Dict[str, str]:
    tags: Dict[str, str] = {}
    for name, value in _LEAF_TAG.findall(block):
        tags.setdefault(name.upper(), value.strip())
    return tags


def _parse_ofx_date(value: str) -> Optional[date]:
    try:
        return datetime.strptime(value[:8], "%Y%m%d").date()
    except ValueError:
        return None


class OFXParser:
    """Extract the transaction list of an OFX statement."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self.max_bytes = max_bytes

    def parse(self, content: str) -> OFXImportReport:
        size = len(content.encode("utf-8"))
        if size > self.max_bytes:
            raise ParseError(f"Arquivo OFX excede o limite de {self.max_bytes} bytes ({size} bytes).")

        upper = content.upper()
        start = upper.find("<BANKTRANLIST>")
        end = upper.find("</BANKTRANLIST>", start + 1)
        if start < 0 or end < 0:
            raise ParseError("Lista de transações não encontrada (BANKTRANLIST).")

        block = content[start + len("<BANKTRANLIST>") : end]
        report = OFXImportReport()
        for index, raw in enumerate(_TRANSACTION_SPLIT.split(block)[1:]):
            transaction = self._parse_transaction(raw, index)
            if transaction is None:
                report.alerts.append(f"Transação {index + 1} ignorada: FITID, DTPOSTED ou TRNAMT ausente/inválido.")
                continue
            report.transactions.append(transaction)

        header = _leaf_tags(content[:start])
        report.bank_id = header.get("BANKID")
        report.account_id = header.get("ACCTID")
        report.refresh()
        if not report.is_valid:
            report.alerts.append("Nenhuma transação encontrada no arquivo.")
        LOGGER.info("Parsed OFX statement with %s transactions", report.processed_count)
        return report

    @staticmethod
    def _parse_transaction(raw: str, index: int) -> Optional[OFXTransaction]:
        tags = _leaf_tags(raw)
        fitid = tags.get("FITID")
        posted_at = _parse_ofx_date(tags.get("DTPOSTED", ""))
        amount_text = tags.get("TRNAMT")
        if not fitid or posted_at is None or not amount_text:
            return None
        amount = safe_float(amount_text, default=float("nan"))
        if amount != amount:
            return None

        name = tags.get("NAME", "")
        memo = tags.get("MEMO") or None
        description = " - ".join(part for part in (name, memo) if part)
        return OFXTransaction(
            fitid=fitid,
            type=CREDIT if amount > 0 else DEBIT,
            posted_at=posted_at,
            amount=amount,
            description=description.replace("&amp;", "&").strip(),
            memo=memo,
            bank_type=(tags.get("TRNTYPE") or "OTHER").upper(),
            original_index=index,
        )


def classify(transactions: Sequence[OFXTransaction]) -> List[OFXTransaction]:
    """Suggest a category for every transaction from keywords in its description."""

    for transaction in transactions:
        text = transaction.description.upper()
        rules, fallback = (CREDIT_RULES, CREDIT_FALLBACK) if transaction.is_credit else (DEBIT_RULES, DEBIT_FALLBACK)
        transaction.category = next(
            (category for keywords, category in rules if any(keyword in text for keyword in keywords)),
            fallback,
        )
    return list(transactions)


@dataclass
class SaveResult:
    count: int
    reconciliation_id: Optional[str] = None


class OFXReconciler:
    """Store-backed steps of the OFX import: duplicates, matching, saving and settling."""

    def __init__(self, store: Store, *, tolerance: float = 0.01) -> None:
        self.store = store
        self.tolerance = tolerance

    async def process(self, report: OFXImportReport, company_id: str) -> OFXImportReport:
        classify(report.transactions)
        await self.detect_duplicates(report.transactions, company_id)
        await self.find_matches(report.transactions, company_id)
        report.refresh()
        if report.duplicates_count:
            report.alerts.append(f"{report.duplicates_count} transação(ões) já importada(s) ou repetida(s) no arquivo.")
        return report

    async def detect_duplicates(self, transactions: Sequence[OFXTransaction], company_id: str) -> List[OFXTransaction]:
        if not transactions:
            return []
        existing = await self.store.select_in(
            "reconciliation_items", "fitid", [t.fitid for t in transactions], company_id=company_id
        )
        known = {row["fitid"] for row in existing}

        seen = set()
        for transaction in transactions:
            if transaction.fitid in known:
                transaction.status = TransactionStatus.RECONCILED
            elif transaction.fitid in seen:
                transaction.status = TransactionStatus.DUPLICATED
            else:
                transaction.status = TransactionStatus.NEW
                seen.add(transaction.fitid)
        return list(transactions)

    async def find_matches(self, transactions: Sequence[OFXTransaction], company_id: str) -> List[OFXTransaction]:
        payables, receivables = await asyncio.gather(
            self.store.select("accounts_payable", company_id=company_id, status="em_aberto"),
            self.store.select("accounts_receivable", company_id=company_id, status="em_aberto"),
        )
        suppliers, customers = await asyncio.gather(
            self.store.select_in("suppliers", "id", {row.get("supplier_id") for row in payables}),
            self.store.select_in("customers", "id", {row.get("customer_id") for row in receivables}),
        )
        supplier_names = {row["id"]: row.get("nome_razao") for row in suppliers}
        customer_names = {row["id"]: row.get("name") for row in customers}

        claimed = set()
        for transaction in transactions:
            if transaction.status != TransactionStatus.NEW:
                continue
            if transaction.is_credit:
                match = self._first_match(receivables, "net_value", transaction.amount, claimed)
                if match:
                    name = customer_names.get(match.get("customer_id"))
                    self._apply_match(transaction, MatchType.RECEIVABLE, match, f"Recebimento: {match.get('description')} ({name})")
            else:
                match = self._first_match(payables, "final_value", abs(transaction.amount), claimed)
                if match:
                    name = supplier_names.get(match.get("supplier_id"))
                    self._apply_match(transaction, MatchType.PAYABLE, match, f"Pagamento: {match.get('description')} ({name})")
            if transaction.match_id:
                claimed.add(transaction.match_id)
        return list(transactions)

    def _first_match(self, rows: List[dict], value_field: str, amount: float, claimed: set) -> Optional[dict]:
        for row in rows:
            if row["id"] in claimed:
                continue
            if money_equals(safe_float(row.get(value_field)), amount, self.tolerance):
                return row
        return None

    @staticmethod
    def _apply_match(transaction: OFXTransaction, match_type: MatchType, row: dict, description: str) -> None:
        transaction.match_type = match_type
        transaction.match_id = row["id"]
        transaction.match_description = description
        LOGGER.debug("OFX %s suggested for %s %s", transaction.fitid, match_type.value, row["id"])

    async def save_transactions(
        self,
        report: OFXImportReport,
        account_id: str,
        company_id: str,
        user_id: Optional[str] = None,
    ) -> SaveResult:
        new = report.new_transactions()
        if not new:
            return SaveResult(count=0)

        header = await self.store.insert_one(
            "bank_reconciliations",
            {
                "company_id": company_id,
                "account_id": account_id,
                "reconciliation_date": min(t.posted_at for t in new).isoformat(),
                "statement_balance": 0.0,
                "system_balance": 0.0,
                "difference": 0.0,
                "status": "pendente",
                "notes": f"Importação OFX em {datetime.now():%d/%m/%Y %H:%M}",
                "created_by": user_id,
            },
        )
        rows = [
            {
                "reconciliation_id": header["id"],
                "company_id": company_id,
                "account_id": account_id,
                "statement_date": t.posted_at.isoformat(),
                "statement_value": t.amount,
                "statement_description": t.description,
                "fitid": t.fitid,
                "is_matched": False,
                "notes": t.category,
            }
            for t in new
        ]
        try:
            await self.store.insert("reconciliation_items", rows)
        except StoreError:
            LOGGER.exception("Failed to save OFX items, removing reconciliation %s", header["id"])
            await self.store.delete("bank_reconciliations", id=header["id"])
            raise
        LOGGER.info("Saved %s OFX transactions in reconciliation %s", len(rows), header["id"])
        return SaveResult(count=len(rows), reconciliation_id=header["id"])

    async def reconcile(
        self,
        transaction: OFXTransaction,
        account_id: str,
        company_id: str,
        user_id: Optional[str] = None,
    ) -> OFXTransaction:
        """Settle the suggested title and record the movement for ``transaction``.

        The three writes run in order; when one fails, the ones already done
        are reverted in reverse order and :class:`ReconciliationError` is raised.
        """

        if transaction.status == TransactionStatus.DUPLICATED:
            raise ReconciliationError(f"Transação {transaction.fitid} está duplicada no arquivo.")

        compensations: List[Tuple[str, Callable[[], Any]]] = []
        now = datetime.now().isoformat()
        try:
            items = await self.store.select(
                "reconciliation_items", limit=1, company_id=company_id, fitid=transaction.fitid
            )
            if not items:
                raise ReconciliationError(
                    f"Transação {transaction.fitid} não foi salva; salve o extrato antes de conciliar."
                )
            if items[0].get("is_matched"):
                raise ReconciliationError(f"Transação {transaction.fitid} já foi conciliada.")

            if transaction.match_id and transaction.match_type != MatchType.NONE:
                collection = "accounts_payable" if transaction.match_type == MatchType.PAYABLE else "accounts_receivable"
                previous = await self.store.select_one(collection, id=transaction.match_id, company_id=company_id)
                await self.store.update(
                    collection,
                    {"status": "pago_total", "paid_value": abs(transaction.amount), "paid_at": now},
                    id=transaction.match_id,
                )
                restore = {key: previous.get(key) for key in ("status", "paid_value", "paid_at")}
                compensations.append(
                    (f"revert {collection}", lambda c=collection, r=restore: self.store.update(c, r, id=transaction.match_id))
                )

            movement = await self.store.insert_one(
                "financial_movements",
                {
                    "company_id": company_id,
                    "account_id": account_id,
                    "movement_date": transaction.posted_at.isoformat(),
                    "movement_type": "entrada" if transaction.is_credit else "saida",
                    "description": transaction.description,
                    "value": abs(transaction.amount),
                    "nature_id": None,
                    "category": transaction.category,
                    "created_by": user_id,
                    "payable_id": transaction.match_id if transaction.match_type == MatchType.PAYABLE else None,
                    "receivable_id": transaction.match_id if transaction.match_type == MatchType.RECEIVABLE else None,
                    "fitid": transaction.fitid,
                },
            )
            compensations.append(
                ("delete movement", lambda: self.store.delete("financial_movements", id=movement["id"]))
            )

            await self.store.update(
                "reconciliation_items",
                {"is_matched": True, "matched_at": now, "matched_by": user_id},
                company_id=company_id,
                fitid=transaction.fitid,
            )
        except StoreError as exc:
            LOGGER.exception("Reconciliation of %s failed, reverting %s step(s)", transaction.fitid, len(compensations))
            await self._compensate(compensations)
            raise ReconciliationError(f"Falha ao conciliar transação {transaction.fitid}: {exc.user_message()}") from exc

        transaction.status = TransactionStatus.RECONCILED
        LOGGER.info("Reconciled OFX transaction %s (%s)", transaction.fitid, transaction.match_type.value)
        return transaction

    @staticmethod
    async def _compensate(compensations: List[Tuple[str, Callable[[], Any]]]) -> None:
        for label, undo in reversed(compensations):
            try:
                await undo()
            except StoreError:
                LOGGER.exception("Compensation step '%s' failed; manual review required", label)


__all__ = [
    "OFXParser",
    "OFXReconciler",
    "OFXTransaction",
    "OFXImportReport",
    "SaveResult",
    "TransactionStatus",
    "MatchType",
    "classify",
    "CREDIT",
    "DEBIT",
]
