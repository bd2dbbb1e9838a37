"""
Expiry sweeper background worker.

Every ``sweep_interval_seconds``:
- pending attempts older than ``pending_attempt_ttl_minutes`` are checked
  with their gateway, then settled or expired
- completed attempts whose entitlement was never granted are re-activated
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Optional

import httpx
import structlog

from memberpay.config import Settings, get_settings
from memberpay.core.orchestrator import build_orchestrator
from memberpay.core.reconciliation import ReconciliationEngine, SweepReport
from memberpay.core.types import Clock, utcnow
from memberpay.database.connection import close_db, get_session_factory
from memberpay.integrations.gateways import build_gateways
from memberpay.monitoring.logging import setup_logging
from memberpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_sweep(
    engine: ReconciliationEngine,
    ttl_minutes: int,
    clock: Clock = utcnow,
    batch_size: int = 100,
) -> SweepReport:
    """
    Run a single sweep pass.

    Args:
        engine: Reconciliation engine bound to the gateways and database
        ttl_minutes: Age after which a pending attempt is stale
        clock: Time source
        batch_size: Max attempts handled per phase

    Returns:
        SweepReport: Combined counts of both phases
    """
    cutoff = clock() - timedelta(minutes=ttl_minutes)
    stale = await engine.sweep_stale(cutoff, limit=batch_size)
    resumed = await engine.resume_activations(limit=batch_size)

    report = SweepReport(
        expired=stale.expired,
        settled=stale.settled,
        skipped=stale.skipped,
        activated=resumed.activated,
        activation_failures=resumed.activation_failures,
    )
    metrics.record_sweep(report.expired, report.activated, report.activation_failures)

    logger.info(
        "sweep_completed",
        cutoff=cutoff.isoformat(),
        expired=report.expired,
        settled=report.settled,
        skipped=report.skipped,
        activated=report.activated,
        activation_failures=report.activation_failures,
    )
    if report.activation_failures:
        logger.warning("sweep_activation_failures", count=report.activation_failures)
    return report


async def start_expiry_sweeper(settings: Optional[Settings] = None) -> None:
    """
    Start the expiry sweeper.

    Runs until SIGINT/SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    logger.info(
        "expiry_sweeper_starting",
        interval_seconds=settings.sweep_interval_seconds,
        ttl_minutes=settings.pending_attempt_ttl_minutes,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("expiry_sweeper_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
    orchestrator = build_orchestrator(
        settings, get_session_factory(settings), build_gateways(settings, http_client)
    )

    try:
        while running:
            try:
                await run_sweep(
                    orchestrator.reconciliation, settings.pending_attempt_ttl_minutes
                )
            except Exception as e:
                logger.error("sweep_execution_error", error=str(e), exc_info=True)
                # Keep sweeping; the next pass retries the same attempts

            remaining = settings.sweep_interval_seconds
            while remaining > 0 and running:
                sleep_time = min(remaining, 1.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        await http_client.aclose()
        await close_db()
        logger.info("expiry_sweeper_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_expiry_sweeper())


if __name__ == "__main__":
    main()
