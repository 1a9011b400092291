from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from expense_pipeline import models
from expense_pipeline.config import Settings
from expense_pipeline.core.errors import ValidationInputError
from expense_pipeline.schemas.policies import Policies

logger = logging.getLogger("expenses.policies")

CURRENT_POLICY_NAME = "current"


def parse_policies(raw: Any) -> Policies:
    if isinstance(raw, Policies):
        return raw
    try:
        return Policies.model_validate(raw)
    except ValidationError as exc:
        raise ValidationInputError(f"Invalid policies document: {exc}") from exc


def parse_default_policies(raw: Optional[str]) -> Optional[Policies]:
    """Parse the DEFAULT_POLICIES fallback document (JSON)."""
    if raw is None or not str(raw).strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationInputError("DEFAULT_POLICIES must be valid JSON") from exc
    return parse_policies(parsed)


def get_current_policy(db: Session) -> Optional[models.ValidationPolicy]:
    return (
        db.query(models.ValidationPolicy)
        .filter(models.ValidationPolicy.name == CURRENT_POLICY_NAME)
        .first()
    )


def unwrap_policies_body(body: Any) -> Any:
    """Accept either the bare document or ``{"policies": {...}}``."""
    if isinstance(body, dict) and body.get("policies") is not None:
        return body["policies"]
    return body


def save_current_policies(db: Session, raw: Any) -> models.ValidationPolicy:
    """Validate ``raw`` and upsert it as the ``current`` row. Caller commits."""
    policies = parse_policies(raw)
    document = policies.model_dump(mode="json")

    row = get_current_policy(db)
    if row is None:
        row = models.ValidationPolicy(name=CURRENT_POLICY_NAME, policies=document)
        db.add(row)
    else:
        row.policies = document
    db.flush()

    logger.info("policies_updated", extra={"base_currency": policies.base_currency})
    return row


class PolicyProvider(ABC):
    @abstractmethod
    def get_current(self) -> Optional[Policies]: ...

    def get_base_currency(self) -> Optional[str]:
        policies = self.get_current()
        return policies.base_currency if policies is not None else None

    def invalidate(self) -> None:
        """Forget any cached policy set. No-op for uncached providers."""


class StaticPolicyProvider(PolicyProvider):
    def __init__(self, policies: Optional[Policies]) -> None:
        self._policies = policies

    def get_current(self) -> Optional[Policies]:
        return self._policies


class DatabasePolicyProvider(PolicyProvider):
    """Reads the row named ``current``; falls back to the DEFAULT_POLICIES document."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        default_policies: Optional[str] = None,
    ) -> None:
        self._session_factory = session_factory
        self._default_policies = default_policies

    def get_current(self) -> Optional[Policies]:
        with self._session_factory() as db:
            row = get_current_policy(db)
            raw = dict(row.policies) if row is not None and row.policies else None

        if raw is not None:
            return parse_policies(raw)
        return parse_default_policies(self._default_policies)


class CachedPolicyProvider(PolicyProvider):
    """Short-TTL cache in front of another provider. A miss (None) is cached too."""

    def __init__(self, inner: PolicyProvider, *, ttl_ms: int = 5000, clock=time.monotonic) -> None:
        self._inner = inner
        self._ttl_seconds = max(0, int(ttl_ms)) / 1000.0
        self._clock = clock
        self._lock = threading.Lock()
        self._loaded_at: Optional[float] = None
        self._value: Optional[Policies] = None

    def get_current(self) -> Optional[Policies]:
        now = self._clock()
        with self._lock:
            if self._loaded_at is not None and now - self._loaded_at < self._ttl_seconds:
                return self._value

        value = self._inner.get_current()
        with self._lock:
            self._value = value
            self._loaded_at = now
        if value is None:
            logger.info("policies_not_configured")
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None
            self._value = None


def build_policy_provider(settings: Settings, session_factory: Callable[[], Session]) -> CachedPolicyProvider:
    return CachedPolicyProvider(
        DatabasePolicyProvider(session_factory, default_policies=settings.default_policies),
        ttl_ms=settings.policies_cache_ttl_ms,
    )
