"""
Service for the cached read models: analytics summary and material lists.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select

from shared.cache.cache import Cache, CacheKeys, CacheTags
from shared.db.database import Database
from shared.db.models import KpiDailySnapshot, Material
from shared.schemas.dto import CacheResult
from shared.utils.configs import cache_configs
from shared.utils.helpers import utcnow
from shared.utils.logger import logger

WARM_JOB_TYPE = "analytics.summary.warm"


def material_view(material: Material) -> Dict[str, Any]:
    return {
        "id": material.id,
        "name": material.name,
        "sku": material.sku,
        "category": material.category,
        "unit": material.unit,
        "stockQuantity": material.stock_quantity,
        "reorderLevel": material.reorder_level,
    }


class CacheManager:
    """
    Loads read models from the database through the cache.

    Each read model carries a tag so projections can drop it when the
    underlying rows change.
    """

    def __init__(self, db: Database, cache: Cache):
        self.db = db
        self.cache = cache

    async def _load_analytics_summary(self) -> Dict[str, Any]:
        async with self.db.session() as session:
            latest = (
                await session.execute(
                    select(KpiDailySnapshot).order_by(KpiDailySnapshot.date.desc()).limit(1)
                )
            ).scalar_one_or_none()
        return {
            "latest": latest.to_dict() if latest else None,
            "warmedAt": utcnow().isoformat(),
        }

    async def analytics_summary(self) -> CacheResult:
        """Latest KPI snapshot plus when the summary was built."""
        return await self.cache.with_cache_meta(
            CacheKeys.ANALYTICS_SUMMARY,
            cache_configs["ttl_analytics_summary_ms"],
            self._load_analytics_summary,
            tags=[CacheTags.ANALYTICS],
        )

    async def warm_analytics_summary(self, payload: Optional[Dict[str, Any]] = None):
        """Job handler: drop the cached summary and rebuild it."""
        self.cache.delete(CacheKeys.ANALYTICS_SUMMARY)
        result = await self.analytics_summary()
        logger.info("Warmed analytics summary cache")
        return result.value

    async def _load_categories(self) -> List[str]:
        async with self.db.session() as session:
            rows = await session.execute(
                select(Material.category)
                .where(Material.is_active.is_(True))
                .where(Material.category.is_not(None))
                .distinct()
                .order_by(Material.category)
            )
            return [row[0] for row in rows]

    async def material_categories(self) -> List[str]:
        return await self.cache.with_cache(
            CacheKeys.MATERIALS_CATEGORIES,
            cache_configs["ttl_materials_ms"],
            self._load_categories,
            tags=[CacheTags.MATERIALS],
        )

    async def _load_low_stock(self) -> List[Dict[str, Any]]:
        async with self.db.session() as session:
            rows = await session.execute(
                select(Material)
                .where(Material.is_active.is_(True))
                .where(Material.stock_quantity <= Material.reorder_level)
                .order_by(Material.name)
            )
            return [material_view(m) for m in rows.scalars().all()]

    async def low_stock_materials(self) -> List[Dict[str, Any]]:
        return await self.cache.with_cache(
            CacheKeys.MATERIALS_LOW_STOCK,
            cache_configs["ttl_materials_low_stock_ms"],
            self._load_low_stock,
            tags=[CacheTags.MATERIALS],
        )
