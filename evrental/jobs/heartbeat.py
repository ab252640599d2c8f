from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from evrental.domain.ops.db_models import JobHeartbeat


async def record_heartbeat(
    session_factory: async_sessionmaker,
    name: str = "jobs-runner",
    *,
    result: dict[str, dict[str, int]] | None = None,
    error: str | None = None,
) -> None:
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, name)
        if heartbeat is None:
            heartbeat = JobHeartbeat(name=name)
            session.add(heartbeat)
        heartbeat.last_heartbeat = datetime.now(tz=timezone.utc)
        heartbeat.last_result = result
        heartbeat.last_error = error
        await session.commit()
