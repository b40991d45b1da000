from __future__ import annotations

from fastapi import Request
from pydantic import BaseModel

from opsgate.persistence.db import pool_stats


class HealthResponse(BaseModel):
    status: str
    service: str
    db_pool: dict[str, int | None]


async def health(request: Request) -> HealthResponse:
    # Liveness only; reports pool counters without touching the database.
    return HealthResponse(
        status="ok",
        service=request.app.state.settings.app_name,
        db_pool=pool_stats(request.app.state.engine),
    )
