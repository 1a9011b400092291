from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from expense_pipeline.services.cache import CacheService
from expense_pipeline.services.expense_store import ExpenseStore

logger = logging.getLogger("expenses.dedup")

DedupReason = Literal["duplicate_fingerprint", "duplicate_fingerprint_db"]

DUPLICATE_FINGERPRINT: DedupReason = "duplicate_fingerprint"
DUPLICATE_FINGERPRINT_DB: DedupReason = "duplicate_fingerprint_db"


@dataclass(frozen=True)
class DedupDecision:
    admitted: bool
    fingerprint: str
    cache_key: str
    reason: Optional[DedupReason] = None
    # "cache" or "db" when rejected.
    source: Optional[str] = None


def dedup_cache_key(scope_key: Optional[str], fingerprint: str) -> str:
    scope = str(scope_key or "").strip()
    return f"{scope}:{fingerprint}" if scope else fingerprint


class DeduplicationGate:
    """Admit/skip decision over a fast cache and the durable expense store.

    The cache marker is scoped (e.g. by upload process) so one fingerprint can
    be processed again under a new scope; the store lookup is global. Unless
    ``atomic`` is set, exists() followed by set() is not atomic: two
    concurrent deliveries of one fingerprint may both be admitted.
    """

    def __init__(
        self,
        cache: CacheService,
        store: ExpenseStore,
        *,
        ttl_seconds: int = 86400,
        atomic: bool = False,
    ) -> None:
        self._cache = cache
        self._store = store
        self.ttl_seconds = int(ttl_seconds)
        self._atomic = bool(atomic)

    def admit(self, scope_key: Optional[str], fingerprint: str) -> DedupDecision:
        key = dedup_cache_key(scope_key, fingerprint)

        if self._cache.exists(key):
            logger.warning(
                "dedup_duplicate_fingerprint",
                extra={"fingerprint": fingerprint, "cache_key": key, "source": "cache"},
            )
            return DedupDecision(
                admitted=False,
                fingerprint=fingerprint,
                cache_key=key,
                reason=DUPLICATE_FINGERPRINT,
                source="cache",
            )

        if self._store.exists_by_fingerprint(fingerprint):
            # Cross-scope duplicate: kept for audit, not reprocessed.
            logger.warning(
                "dedup_duplicate_fingerprint_db",
                extra={"fingerprint": fingerprint, "cache_key": key, "source": "db"},
            )
            return DedupDecision(
                admitted=False,
                fingerprint=fingerprint,
                cache_key=key,
                reason=DUPLICATE_FINGERPRINT_DB,
                source="db",
            )

        if self._atomic:
            if not self._cache.set_if_absent(key, "1", self.ttl_seconds):
                logger.warning(
                    "dedup_duplicate_fingerprint",
                    extra={"fingerprint": fingerprint, "cache_key": key, "source": "cache_race"},
                )
                return DedupDecision(
                    admitted=False,
                    fingerprint=fingerprint,
                    cache_key=key,
                    reason=DUPLICATE_FINGERPRINT,
                    source="cache",
                )
        else:
            self._cache.set(key, "1", self.ttl_seconds)

        return DedupDecision(admitted=True, fingerprint=fingerprint, cache_key=key)
