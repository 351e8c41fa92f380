"""Persistence interface used by the pipelines and a JSON backed implementation.

The pipelines never talk to a database driver directly.  They receive a
:class:`Store`, an asynchronous request/response interface over named
collections (``suppliers``, ``products``, ``entry_notes`` ...).  Any backend
that can answer equality filtered selects, inserts, updates and deletes can be
plugged in.  :class:`InMemoryStore` is the implementation shipped with the
project; it keeps rows in memory and can optionally persist them to a JSON
file, which is what the CLI and the API use.
"""

from __future__ import annotations

import abc
import logging
import uuid
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import StoreError
from .utils import dump_json, load_json


LOGGER = logging.getLogger(__name__)

Row = Dict[str, Any]


# Collections with a business key that must stay unique per tenant.
UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    "suppliers": ("company_id", "cpf_cnpj"),
    "supplier_product_links": ("company_id", "supplier_cnpj", "supplier_product_code"),
    "reconciliation_items": ("company_id", "fitid"),
}


class Store(abc.ABC):
    """Asynchronous query/insert/update/delete interface over named collections."""

    @abc.abstractmethod
    async def select(self, collection: str, *, limit: Optional[int] = None, **filters: Any) -> List[Row]:
        """Return rows whose fields equal every given filter."""

    @abc.abstractmethod
    async def select_in(self, collection: str, field: str, values: Iterable[Any], **filters: Any) -> List[Row]:
        """Return rows whose ``field`` is one of ``values``."""

    @abc.abstractmethod
    async def insert(self, collection: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        """Insert ``rows`` and return them with their generated ``id``."""

    @abc.abstractmethod
    async def update(self, collection: str, values: Mapping[str, Any], **filters: Any) -> List[Row]:
        """Apply ``values`` to every matching row and return the updated rows."""

    @abc.abstractmethod
    async def delete(self, collection: str, **filters: Any) -> int:
        """Delete matching rows and return how many were removed."""

    async def select_one(self, collection: str, **filters: Any) -> Row:
        rows = await self.select(collection, limit=1, **filters)
        if not rows:
            raise StoreError(f"No row in {collection} matching {filters}", code="PGRST116", collection=collection)
        return rows[0]

    async def insert_one(self, collection: str, row: Mapping[str, Any]) -> Row:
        return (await self.insert(collection, [row]))[0]


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    return all(row.get(key) == value for key, value in filters.items())


class InMemoryStore(Store):
    """Dictionary backed :class:`Store`, optionally mirrored to a JSON file."""

    def __init__(self, path: Optional[Path] = None, *, failures: Optional[Dict[Tuple[str, str], StoreError]] = None) -> None:
        self.path = Path(path) if path else None
        self.collections: Dict[str, List[Row]] = {}
        # (collection, operation) -> error raised on the next matching call
        self.failures: Dict[Tuple[str, str], StoreError] = dict(failures or {})
        if self.path:
            existing = load_json(self.path)
            if existing:
                self.collections.update(existing.get("collections", {}))

    def _rows(self, collection: str) -> List[Row]:
        return self.collections.setdefault(collection, [])

    def _raise_if_failing(self, collection: str, operation: str) -> None:
        error = self.failures.pop((collection, operation), None)
        if error is not None:
            raise error

    def fail_next(self, collection: str, operation: str, error: StoreError) -> None:
        self.failures[(collection, operation)] = error

    def seed(self, collection: str, rows: Iterable[Mapping[str, Any]]) -> List[Row]:
        """Synchronous helper used to prime the store (tests, catalogue loading)."""

        stored = []
        for row in rows:
            record = dict(row)
            record.setdefault("id", str(uuid.uuid4()))
            self._rows(collection).append(record)
            stored.append(deepcopy(record))
        return stored

    async def select(self, collection: str, *, limit: Optional[int] = None, **filters: Any) -> List[Row]:
        self._raise_if_failing(collection, "select")
        rows = [deepcopy(row) for row in self._rows(collection) if _matches(row, filters)]
        return rows[:limit] if limit is not None else rows

    async def select_in(self, collection: str, field: str, values: Iterable[Any], **filters: Any) -> List[Row]:
        self._raise_if_failing(collection, "select")
        wanted = set(values)
        return [
            deepcopy(row)
            for row in self._rows(collection)
            if row.get(field) in wanted and _matches(row, filters)
        ]

    async def insert(self, collection: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        self._raise_if_failing(collection, "insert")
        prepared = []
        for row in rows:
            record = dict(row)
            record.setdefault("id", str(uuid.uuid4()))
            self._check_unique(collection, record, prepared)
            prepared.append(record)
        self._rows(collection).extend(prepared)
        self.save()
        return [deepcopy(record) for record in prepared]

    async def update(self, collection: str, values: Mapping[str, Any], **filters: Any) -> List[Row]:
        self._raise_if_failing(collection, "update")
        updated = []
        for row in self._rows(collection):
            if _matches(row, filters):
                row.update(values)
                updated.append(deepcopy(row))
        self.save()
        return updated

    async def delete(self, collection: str, **filters: Any) -> int:
        self._raise_if_failing(collection, "delete")
        rows = self._rows(collection)
        kept = [row for row in rows if not _matches(row, filters)]
        removed = len(rows) - len(kept)
        self.collections[collection] = kept
        self.save()
        return removed

    def _check_unique(self, collection: str, record: Row, pending: List[Row]) -> None:
        key_fields = UNIQUE_KEYS.get(collection)
        if not key_fields:
            return
        key = tuple(record.get(name) for name in key_fields)
        if any(value is None for value in key):
            return
        for row in [*self._rows(collection), *pending]:
            if tuple(row.get(name) for name in key_fields) == key:
                raise StoreError(
                    f"duplicate key value violates unique constraint on {collection} {key_fields}",
                    code="23505",
                    collection=collection,
                )

    def save(self) -> None:
        if not self.path:
            return
        try:
            dump_json(self.path, {"collections": self.collections})
        except OSError as exc:
            LOGGER.exception("Failed to persist store to %s", self.path)
            raise StoreError(f"Failed to persist store: {exc}") from exc


__all__ = ["Store", "InMemoryStore", "Row", "UNIQUE_KEYS"]
