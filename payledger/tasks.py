"""Periodic maintenance jobs, scheduled by cron or any external scheduler."""

from __future__ import annotations

from typing import Optional

from config import RECONCILE_BATCH_LIMIT, RECONCILE_PENDING_AFTER_SECONDS

from .db import SessionFactory
from .provider import get_payment_provider
from .reconciliation import ProviderFactory, SweepReport, sweep_stale_intents


def run_reconciliation_sweep(
    *,
    older_than_seconds: int = RECONCILE_PENDING_AFTER_SECONDS,
    limit: int = RECONCILE_BATCH_LIMIT,
    provider_factory: ProviderFactory = get_payment_provider,
    session_factory: Optional[SessionFactory] = None,
) -> SweepReport:
    """Confirm intents whose callback never arrived by asking the provider."""
    return sweep_stale_intents(
        older_than_seconds=older_than_seconds,
        limit=limit,
        provider_factory=provider_factory,
        session_factory=session_factory,
    )
