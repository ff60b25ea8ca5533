"""
Cycle Scheduler
===============

Ticking driver for the pipeline.

Loops:
    - ingest:  pipeline.ingest(SYMBOLS, FEEDS) every INGEST_INTERVAL_SEC
    - drift:   drift.run_scheduled_check() every DRIFT_CHECK_INTERVAL_SEC
    - state:   metrics summary log line every STATE_LOG_INTERVAL_SEC

A failed cycle is logged and counted; the next cycle runs on schedule.
There are no retries inside a cycle.

Usage:
    scheduler = CycleScheduler(pipeline)
    task = asyncio.create_task(scheduler.run_forever(shutdown_event))
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from tickflow.pipeline import PipelineContext

logger = logging.getLogger(__name__)

STATE_LOG_INTERVAL_SEC = 60.0


async def _wait_or_shutdown(shutdown_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to timeout; True if shutdown was requested."""
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


class CycleScheduler:
    """
    Args:
        pipeline: Pipeline context to drive
        symbols: Symbols per ingestion cycle (default: settings.SYMBOLS)
        exchanges: Feeds per ingestion cycle (default: every configured feed)
        ingest_interval_sec: Seconds between ingestion cycles
        drift_interval_sec: Seconds between scheduled drift checks
    """

    def __init__(
        self,
        pipeline: PipelineContext,
        symbols: Optional[Sequence[str]] = None,
        exchanges: Optional[Sequence[str]] = None,
        ingest_interval_sec: Optional[float] = None,
        drift_interval_sec: Optional[float] = None,
        state_log_interval_sec: float = STATE_LOG_INTERVAL_SEC,
    ) -> None:
        settings = pipeline.settings
        self._pipeline = pipeline
        self._symbols = list(symbols or settings.SYMBOLS)
        self._exchanges = list(exchanges) if exchanges is not None else None
        self._ingest_interval = ingest_interval_sec or settings.INGEST_INTERVAL_SEC
        self._drift_interval = drift_interval_sec or settings.DRIFT_CHECK_INTERVAL_SEC
        self._state_log_interval = state_log_interval_sec

        self._cycle_count = 0
        self._error_count = 0
        self._drift_checks = 0

        logger.info(
            "scheduler_initialized",
            extra={
                "symbols": self._symbols,
                "exchanges": self._exchanges,
                "ingest_interval_sec": self._ingest_interval,
                "drift_interval_sec": self._drift_interval,
            },
        )

    @property
    def stats(self) -> dict[str, int]:
        return {
            "cycles": self._cycle_count,
            "errors": self._error_count,
            "drift_checks": self._drift_checks,
        }

    async def run_once(self) -> dict[str, Any]:
        """Run a single ingestion cycle and return its response."""
        self._cycle_count += 1
        return await self._pipeline.ingest(self._symbols, self._exchanges)

    async def check_drift_once(self) -> dict[str, Any]:
        self._drift_checks += 1
        report = await asyncio.to_thread(self._pipeline.drift.run_scheduled_check)
        return report.to_dict()

    async def _loop(
        self,
        name: str,
        step: Callable[[], Awaitable[Any]],
        interval_sec: float,
        shutdown_event: asyncio.Event,
    ) -> None:
        logger.info("scheduler_loop_starting", extra={"loop": name, "interval_sec": interval_sec})

        while not shutdown_event.is_set():
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._error_count += 1
                if name == "ingest":
                    self._pipeline.metrics.inc_cycle(failed=True)
                logger.error(
                    "scheduler_cycle_error",
                    extra={
                        "loop": name,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "error_count": self._error_count,
                    },
                )

            if await _wait_or_shutdown(shutdown_event, interval_sec):
                break

        logger.info("scheduler_loop_stopped", extra={"loop": name})

    async def _log_state(self) -> None:
        logger.info(
            "metrics_snapshot",
            extra={**self._pipeline.metrics.get_short_summary(), **self.stats},
        )

    async def run_forever(self, shutdown_event: asyncio.Event) -> None:
        """Run every loop until shutdown."""
        tasks = [
            asyncio.create_task(
                self._loop("ingest", self.run_once, self._ingest_interval, shutdown_event),
                name="scheduler_ingest",
            ),
            asyncio.create_task(
                self._loop("drift", self.check_drift_once, self._drift_interval, shutdown_event),
                name="scheduler_drift",
            ),
            asyncio.create_task(
                self._loop("state", self._log_state, self._state_log_interval, shutdown_event),
                name="scheduler_state_logger",
            ),
        ]

        logger.info("scheduler_started", extra={"tasks_count": len(tasks)})

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("scheduler_cancelled")
            raise
        finally:
            logger.info("scheduler_stopped", extra=self.stats)
