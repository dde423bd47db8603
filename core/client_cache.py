"""Last-known client records, keyed by ``(listing_id, position)``.

Button payloads only carry the listing id and the client's index inside it,
so callback handlers resolve them here instead of refetching every inbound.
Entries are replaced wholesale on every listing fetch and patched in place
after a toggle; nothing is evicted on its own because the number of keys is
bounded by the clients that exist on the panel.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from core.locks import KeyedLock

CacheKey = Tuple[int, int]

# Numeric fields the panel returns as JSON numbers; decoded through float
# they must be sent back as ints or the panel stores 1.7e+12 style values.
NUMERIC_FIELDS = ("expiryTime", "totalGB", "reset", "limitIp", "tgId", "created_at", "updated_at")


def _as_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _as_bool(value: Any, default: bool = True) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "")
    if value is None:
        return default
    return bool(value)


@dataclass(frozen=True)
class CachedClientRecord:
    listing_id: int
    position: int
    email: str
    enabled: bool = True
    total_bytes: int = 0
    expiry_ms: int = 0
    tg_id: int = 0
    protocol: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def key(self) -> CacheKey:
        return (self.listing_id, self.position)

    @property
    def client_key(self) -> str:
        """Identifier the panel's update/delete endpoints expect."""
        if self.protocol == "trojan":
            return str(self.raw.get("password") or "")
        if self.protocol == "shadowsocks":
            return self.email
        return str(self.raw.get("id") or self.raw.get("password") or self.email)

    @property
    def unlimited_expiry(self) -> bool:
        return self.expiry_ms <= 0

    @classmethod
    def from_panel(cls, listing_id: int, position: int, doc: Dict[str, Any], protocol: str = "") -> "CachedClientRecord":
        return cls(
            listing_id=int(listing_id),
            position=int(position),
            email=str(doc.get("email") or ""),
            enabled=_as_bool(doc.get("enable"), default=True),
            total_bytes=_as_int(doc.get("totalGB")),
            expiry_ms=_as_int(doc.get("expiryTime")),
            tg_id=_as_int(doc.get("tgId")),
            protocol=protocol or "",
            raw=copy.deepcopy(doc),
        )

    def with_enabled(self, enabled: bool) -> "CachedClientRecord":
        raw = copy.deepcopy(self.raw)
        raw["enable"] = enabled
        return replace(self, enabled=enabled, raw=raw)


def set_enabled(enabled: bool) -> Callable[[CachedClientRecord], CachedClientRecord]:
    return lambda record: record.with_enabled(enabled)


class ClientRecordCache:
    """Associative store with per-key mutual exclusion.

    ``store``/``load`` are single dictionary operations.  ``patch`` runs its
    mutator under the lock of that key only, so two admins toggling the same
    client are serialised while unrelated clients are not.  Mutators must be
    pure: never call the panel or the gateway from inside one.
    """

    def __init__(self):
        self._records: Dict[CacheKey, CachedClientRecord] = {}
        self._lock_for = KeyedLock()

    def store(self, key: CacheKey, record: CachedClientRecord) -> None:
        with self._lock_for(key):
            self._records[key] = record

    def store_listing(self, records: Iterable[CachedClientRecord]) -> int:
        count = 0
        for record in records:
            self.store(record.key, record)
            count += 1
        return count

    def load(self, key: CacheKey) -> Optional[CachedClientRecord]:
        with self._lock_for(key):
            return self._records.get(key)

    def patch(
        self,
        key: CacheKey,
        mutator: Callable[[CachedClientRecord], CachedClientRecord],
    ) -> Optional[CachedClientRecord]:
        """Replace the record at *key* with ``mutator(record)``.

        Returns the new record, or ``None`` when nothing is cached for *key*.
        """
        with self._lock_for(key):
            current = self._records.get(key)
            if current is None:
                return None
            updated = mutator(current)
            self._records[key] = updated
            return updated

    def discard(self, key: CacheKey) -> None:
        with self._lock_for(key):
            self._records.pop(key, None)

    def __len__(self) -> int:
        return len(self._records)
