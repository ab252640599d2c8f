import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from evrental.dependencies import build_engine
from evrental.domain.bookings.service import BookingEngine
from evrental.domain.outbox.service import OutboxHandlers, process_outbox
from evrental.domain.settlements.refunds import build_outbox_handlers
from evrental.infra.db import get_session_factory
from evrental.infra.gateways import build_gateways
from evrental.infra.logging import configure_logging
from evrental.infra.metrics import configure_metrics, metrics
from evrental.jobs.expiry import expire_pending_bookings
from evrental.jobs.heartbeat import record_heartbeat
from evrental.settings import settings

logger = logging.getLogger(__name__)

JOB_NAMES = ("expire-bookings", "outbox")

Runner = Callable[[async_sessionmaker], Awaitable[dict[str, int]]]


def _job_runner(name: str, engine: BookingEngine, handlers: OutboxHandlers, batch_size: int) -> Runner:
    if name == "expire-bookings":
        return lambda session_factory: expire_pending_bookings(session_factory, engine, limit=batch_size)
    if name == "outbox":

        async def _outbox(session_factory: async_sessionmaker) -> dict[str, int]:
            async with session_factory() as session:
                return await process_outbox(session, handlers, limit=batch_size)

        return _outbox
    raise ValueError(f"unknown_job:{name}")


def _record_job_metrics(job: str, result: dict[str, int]) -> None:
    for status, count in result.items():
        metrics.record_job(job, status, count)


async def run_jobs_once(
    session_factory: async_sessionmaker,
    runners: dict[str, Runner],
) -> dict[str, dict[str, int]]:
    results: dict[str, dict[str, int]] = {}
    for name, runner in runners.items():
        try:
            result = await runner(session_factory)
        except Exception as exc:  # noqa: BLE001
            metrics.record_job(name, "error")
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            continue
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        _record_job_metrics(name, result)
        results[name] = result
    return results


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run rental background jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--batch-size", type=int, default=100, help="Items handled per job per loop")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    gateways = build_gateways(settings)
    engine = build_engine(settings, gateways=gateways, metrics=metrics)
    handlers = build_outbox_handlers(gateways, settings)

    job_names = args.jobs or list(JOB_NAMES)
    runners = {name: _job_runner(name, engine, handlers, args.batch_size) for name in job_names}

    while True:
        results = await run_jobs_once(session_factory, runners)
        failed = sorted(set(job_names) - set(results))
        await record_heartbeat(
            session_factory,
            name="jobs-runner",
            result=results,
            error=f"failed: {', '.join(failed)}" if failed else None,
        )
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
