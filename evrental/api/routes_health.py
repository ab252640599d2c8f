import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from evrental.domain.ops.db_models import JobHeartbeat

router = APIRouter()
logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
HEADS_TTL_SECONDS = 60
HEARTBEAT_STALE_SECONDS = 600

_heads_cache: dict[str, Any] = {"loaded_at": 0.0, "heads": None, "skip_reason": None}


def expected_heads() -> tuple[list[str] | None, str | None]:
    """Alembic heads shipped with the code, or a reason the check is skipped."""
    now = time.monotonic()
    if now - _heads_cache["loaded_at"] < HEADS_TTL_SECONDS:
        return _heads_cache["heads"], _heads_cache["skip_reason"]

    alembic_ini = REPO_ROOT / "alembic.ini"
    script_location = REPO_ROOT / "alembic"
    heads: list[str] | None
    skip_reason: str | None
    if not alembic_ini.exists() or not script_location.exists():
        heads, skip_reason = None, "skipped_no_alembic_files"
    else:
        try:
            cfg = Config(str(alembic_ini))
            cfg.set_main_option("script_location", str(script_location))
            heads, skip_reason = list(ScriptDirectory.from_config(cfg).get_heads()), None
        except Exception as exc:  # noqa: BLE001
            logger.warning("alembic_heads_unavailable", extra={"extra": {"reason": type(exc).__name__}})
            heads, skip_reason = [], "error_loading_alembic"
    _heads_cache.update({"loaded_at": now, "heads": heads, "skip_reason": skip_reason})
    return heads, skip_reason


async def _current_revision(session) -> str | None:
    try:
        result = await session.execute(text("SELECT version_num FROM alembic_version"))
    except SQLAlchemyError:
        return None
    row = result.first()
    return row[0] if row else None


async def _jobs_status(session) -> dict[str, Any]:
    heartbeat = await session.get(JobHeartbeat, "jobs-runner")
    if heartbeat is None:
        return {"last_heartbeat": None, "stale": True}
    last = heartbeat.last_heartbeat
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    age = (datetime.now(tz=timezone.utc) - last).total_seconds()
    return {"last_heartbeat": last.isoformat(), "stale": age > HEARTBEAT_STALE_SECONDS}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    heads, skip_reason = expected_heads()
    database: dict[str, Any] = {
        "ok": False,
        "expected_heads": heads or [],
        "migrations_check": skip_reason or "ok",
    }
    jobs: dict[str, Any] | None = None

    if session_factory is None:
        database["message"] = "database session factory unavailable"
    else:
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
                current = await _current_revision(session)
                try:
                    jobs = await _jobs_status(session)
                except SQLAlchemyError:
                    jobs = None
        except Exception as exc:  # noqa: BLE001
            logger.debug("database_check_failed", exc_info=exc)
            database["error"] = exc.__class__.__name__
        else:
            database["ok"] = True
            database["current_version"] = current
            if skip_reason == "skipped_no_alembic_files":
                database["migrations_current"] = True
            else:
                database["migrations_current"] = bool(heads) and current in heads

    ready = database["ok"] and database.get("migrations_current", False)
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ok" if ready else "unhealthy", "database": database, "jobs": jobs},
    )
