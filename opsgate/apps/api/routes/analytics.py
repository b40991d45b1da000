from __future__ import annotations

from typing import Any

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_db, get_principal
from opsgate.services import analytics as analytics_service
from opsgate.services.identity import Principal


async def analytics_overview(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await analytics_service.overview(db, principal=principal)


async def analytics_signups(
    limit: int = Query(default=10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    return await analytics_service.recent_signups(db, limit=limit)


async def analytics_features(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    return await analytics_service.feature_usage(db, principal=principal)


async def analytics_discounts(db: AsyncSession = Depends(get_db)) -> list[dict[str, Any]]:
    return await analytics_service.discount_stats(db)
