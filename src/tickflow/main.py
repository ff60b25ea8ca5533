"""
Main Entry Point
================

Entry point for the Tickflow service.

Usage:
    python -m tickflow
    tickflow

The service will:
1. Load configuration from environment
2. Setup JSON logging
3. Build the pipeline (feeds, store, model registry, drift monitor, risk)
4. Deploy the built-in model if MODEL_AUTO_DEPLOY is set
5. Start HTTP API server (/health, /state, /ingest, /inference, /monitoring)
6. Run ingestion cycles every INGEST_INTERVAL_SEC
7. Run scheduled drift checks every DRIFT_CHECK_INTERVAL_SEC
8. Log a metrics snapshot periodically
9. Shut down gracefully on SIGINT/SIGTERM
"""

import asyncio
import logging
import signal
import sys

import uvicorn

from tickflow import __schema_version__, __version__
from tickflow.config import settings
from tickflow.http_api import create_app
from tickflow.logging_setup import setup_logging
from tickflow.pipeline import build_pipeline
from tickflow.scheduler import CycleScheduler

logger = logging.getLogger(__name__)


async def run_http_server(
    app,
    host: str,
    port: int,
    shutdown_event: asyncio.Event,
) -> None:
    """Serve the API until shutdown_event is set, then let uvicorn drain."""
    server = uvicorn.Server(
        uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
    )

    async def stop_on_shutdown() -> None:
        await shutdown_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(stop_on_shutdown(), name="http_shutdown_watcher")
    logger.info("http_server_starting", extra={"host": host, "port": port})
    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("http_server_cancelled")
    finally:
        watcher.cancel()

    logger.info("http_server_stopped", extra={"host": host, "port": port})


async def main() -> None:
    """Main async entry point."""
    logger.info(
        "tickflow_starting",
        extra={
            "version": __version__,
            "schema_version": __schema_version__,
        },
    )

    logger.info(
        "config_loaded",
        extra={"config": settings.dump()},
    )

    pipeline = build_pipeline(settings)
    scheduler = CycleScheduler(pipeline)
    http_app = create_app(pipeline)
    shutdown_event = asyncio.Event()

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("shutdown_signal", extra={"signal": sig.name})
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    # Create tasks
    scheduler_task = asyncio.create_task(
        scheduler.run_forever(shutdown_event),
        name="scheduler",
    )
    http_task = asyncio.create_task(
        run_http_server(http_app, settings.HTTP_HOST, settings.HTTP_PORT, shutdown_event),
        name="http_server",
    )

    logger.info(
        "tickflow_ready",
        extra={
            "symbols": settings.SYMBOLS,
            "feeds": pipeline.aggregator.feed_names,
            "http_endpoint": f"http://{settings.HTTP_HOST}:{settings.HTTP_PORT}",
            "active_model": getattr(pipeline.registry.active_deployment(), "version", None),
        },
    )

    # Wait for shutdown signal
    await shutdown_event.wait()

    # =========================================
    # GRACEFUL SHUTDOWN
    # =========================================
    logger.info("shutdown_start")

    # 1. Cancel all asyncio tasks
    all_tasks = [scheduler_task, http_task]
    for task in all_tasks:
        task.cancel()

    # 2. Wait for all tasks to complete with return_exceptions=True
    logger.info("shutdown_waiting_tasks")
    results = await asyncio.gather(*all_tasks, return_exceptions=True)

    for task, result in zip(all_tasks, results):
        if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
            logger.warning(
                "shutdown_task_error",
                extra={"task": task.get_name(), "error": str(result)},
            )

    # 3. Close feed clients and flush JSONL mirrors
    await pipeline.close()

    # 4. Log final state
    final_metrics = pipeline.metrics.snapshot()
    logger.info(
        "shutdown_complete",
        extra={
            "cycles_total": final_metrics.get("cycles_total"),
            "predictions_total": final_metrics.get("predictions_total"),
            "alerts_total": final_metrics.get("alerts_total"),
            "scheduler": scheduler.stats,
            "uptime_sec": round(final_metrics.get("uptime_ms", 0) / 1000, 1),
        },
    )


def run() -> None:
    """Synchronous entry point."""
    setup_logging(settings.LOG_LEVEL)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("tickflow_interrupted")
    except asyncio.CancelledError:
        logger.info("tickflow_cancelled")
    except Exception as e:
        logger.exception(
            "tickflow_crashed",
            extra={"error": str(e)},
        )
        sys.exit(1)


if __name__ == "__main__":
    run()
