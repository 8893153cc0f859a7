"""Catalog lookups used during renewal validation.

The renewal engine never writes to the catalog. It only needs the current
price, active flag and stock of a product, as a ``ProductSnapshot``.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from config.settings import settings
from src.db.tables import ProductRow
from src.models.subscription import ProductSnapshot


class CatalogQuery(Protocol):
    async def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        """Current state of a product, or None if it does not exist."""
        ...


def snapshot_from_row(row: ProductRow) -> ProductSnapshot:
    return ProductSnapshot(
        id=row.id,
        name=row.name,
        price_cents=row.price_cents,
        is_active=bool(row.is_active),
        in_stock=bool(row.in_stock),
        stock_count=row.stock_count,
    )


class SqlCatalog:
    """Reads products from the shared database, bounded by a timeout.

    Each lookup runs on its own short-lived session. A lookup cancelled by
    the timeout takes only that connection down with it; the caller's
    session and open transaction are never touched.
    """

    def __init__(self, bind: AsyncEngine, timeout: float | None = None):
        self.sessions = async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)
        self.timeout = timeout if timeout is not None else settings.CATALOG_TIMEOUT_SECONDS

    async def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        async with self.sessions() as session:
            row = await asyncio.wait_for(self._fetch(session, product_id), timeout=self.timeout)
            return snapshot_from_row(row) if row is not None else None

    async def _fetch(self, session: AsyncSession, product_id: str) -> Optional[ProductRow]:
        result = await session.execute(
            select(ProductRow).where(ProductRow.id == product_id)
        )
        return result.scalar_one_or_none()
