"""
SQLAlchemy implementation of the estimate editor's store.

One store wraps one request session. AsyncSession does not allow concurrent
operations, so the editor's gathered writes are serialised on a lock; they
still run inside the request transaction opened by get_db.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import savepoint
from app.models.orm_models import EstimateCategory, EstimateItem, EstimateVersion, LaborRole, row_to_dict
from app.services.errors import NotFoundError, StoreError

logger = logging.getLogger("achats-estimates")


class SqlAlchemyEstimateStore:

    def __init__(self, session: AsyncSession, user_id: Optional[str] = None):
        self.session = session
        self.user_id = user_id
        self._lock = asyncio.Lock()

    async def _scalars(self, stmt) -> List[Dict[str, Any]]:
        async with self._lock:
            try:
                result = await self.session.execute(stmt)
            except SQLAlchemyError as e:
                raise StoreError(str(e.orig) if getattr(e, "orig", None) else str(e)) from e
            return [row_to_dict(row) for row in result.scalars().all()]

    async def _write(self, stmt) -> None:
        async with self._lock:
            try:
                async with savepoint(self.session, "estimate write"):
                    await self.session.execute(stmt)
            except SQLAlchemyError as e:
                logger.warning(f"Estimate write failed: {e}")
                raise StoreError(str(e.orig) if getattr(e, "orig", None) else str(e)) from e

    async def _add(self, obj: Any) -> Dict[str, Any]:
        async with self._lock:
            try:
                async with savepoint(self.session, "estimate insert"):
                    self.session.add(obj)
                    await self.session.flush()
                await self.session.refresh(obj)
            except SQLAlchemyError as e:
                logger.warning(f"Estimate insert failed: {e}")
                raise StoreError(str(e.orig) if getattr(e, "orig", None) else str(e)) from e
            return row_to_dict(obj)

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get_version(self, version_id: str) -> Dict[str, Any]:
        rows = await self._scalars(select(EstimateVersion).where(EstimateVersion.id == version_id))
        if not rows:
            raise NotFoundError("Version introuvable.")
        return rows[0]

    async def list_items(self, version_id: str) -> List[Dict[str, Any]]:
        return await self._scalars(
            select(EstimateItem)
            .where(EstimateItem.version_id == version_id)
            .order_by(EstimateItem.position, EstimateItem.created_at)
        )

    async def list_labor_roles(self) -> List[Dict[str, Any]]:
        return await self._scalars(select(LaborRole).order_by(LaborRole.position, LaborRole.name))

    async def list_categories(self) -> List[Dict[str, Any]]:
        return await self._scalars(
            select(EstimateCategory).order_by(EstimateCategory.position, EstimateCategory.name)
        )

    # ── Writes ───────────────────────────────────────────────────────────────

    async def insert_item(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return await self._add(EstimateItem(**row))

    async def update_item(self, item_id: str, fields: Dict[str, Any]) -> None:
        await self._write(update(EstimateItem).where(EstimateItem.id == item_id).values(**fields))

    async def delete_items(self, item_ids: List[str]) -> None:
        if not item_ids:
            return
        await self._write(delete(EstimateItem).where(EstimateItem.id.in_(item_ids)))

    async def update_version(self, version_id: str, fields: Dict[str, Any]) -> None:
        await self._write(
            update(EstimateVersion).where(EstimateVersion.id == version_id).values(**fields)
        )

    async def update_labor_role(self, role_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        await self._write(update(LaborRole).where(LaborRole.id == role_id).values(**fields))
        rows = await self._scalars(select(LaborRole).where(LaborRole.id == role_id))
        if not rows:
            raise NotFoundError("Role introuvable.")
        return rows[0]

    async def insert_category(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return await self._add(EstimateCategory(user_id=self.user_id, **row))
