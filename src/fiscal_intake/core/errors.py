"""Exception hierarchy shared by the intake pipelines."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover - only for type checkers
    from .entry_note import PostingCheck


class FiscalIntakeError(Exception):
    """Base class for every error raised by this package."""


class ParseError(FiscalIntakeError):
    """Malformed XML/OFX or a missing mandatory element. No partial result."""


STORE_ERROR_MESSAGES = {
    "23505": "Registro duplicado: já existe um registro com estes dados.",
    "23503": "Registro relacionado não encontrado (chave estrangeira inválida).",
    "42501": "Permissão negada pela política de acesso da empresa.",
    "PGRST116": "Registro não encontrado.",
    "PGRST205": "Tabela não encontrada. Execute as migrations primeiro.",
}


class StoreError(FiscalIntakeError):
    """Failure reported by the persistence layer."""

    def __init__(self, message: str, *, code: Optional[str] = None, collection: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.collection = collection

    @property
    def is_not_found(self) -> bool:
        return self.code == "PGRST116"

    def user_message(self) -> str:
        return STORE_ERROR_MESSAGES.get(self.code or "", str(self))


class BlockedEditError(FiscalIntakeError):
    """Edit of a field whose value came from an imported fiscal document."""

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Campo travado: '{field}' veio do XML da nota fiscal e não pode ser alterado."
        )
        self.field = field


class InvalidTransitionError(FiscalIntakeError):
    """Status change or mutation not allowed from the current note status."""


class PostingBlockedError(FiscalIntakeError):
    def __init__(self, check: "PostingCheck") -> None:
        messages = check.errors or check.warnings
        super().__init__("; ".join(messages))
        self.check = check


class ReconciliationError(FiscalIntakeError):
    """A bank transaction could not be reconciled; earlier writes were reverted."""


__all__ = [
    "FiscalIntakeError",
    "ParseError",
    "StoreError",
    "BlockedEditError",
    "InvalidTransitionError",
    "PostingBlockedError",
    "ReconciliationError",
    "STORE_ERROR_MESSAGES",
]
