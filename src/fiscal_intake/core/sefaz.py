"""Boundary with the SEFAZ web services.

The SOAP protocols, certificates and endpoints live outside this package; the
pipelines only depend on the small :class:`SefazGateway` protocol below.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


CIENCIA = "210100"
CONFIRMACAO = "210200"
DESCONHECIMENTO = "210240"
NAO_REALIZADA = "210250"

MANIFEST_EVENTS = {
    CIENCIA: "Ciência da Operação",
    CONFIRMACAO: "Confirmação da Operação",
    DESCONHECIMENTO: "Desconhecimento da Operação",
    NAO_REALIZADA: "Operação não Realizada",
}


@dataclass
class ManifestResult:
    access_key: str
    event_code: str
    success: bool
    protocol: Optional[str] = None
    message: str = ""


class SefazGateway(Protocol):
    async def fetch_xml(self, access_key: str, company_id: str) -> str:
        """Download the authorised XML of ``access_key``."""

    async def manifest(self, access_key: str, event_code: str, company_id: str) -> ManifestResult:
        """Register a recipient manifestation event for ``access_key``."""


__all__ = [
    "SefazGateway",
    "ManifestResult",
    "MANIFEST_EVENTS",
    "CIENCIA",
    "CONFIRMACAO",
    "DESCONHECIMENTO",
    "NAO_REALIZADA",
]
