"""
Site Registry

Durable source of truth for sites: one row per site holding its
environment, config and last-known status. The registry never decides
status on its own; the orchestrator drives every transition and the
registry just persists it.
"""

import logging
from typing import List, Optional, Set

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from ..database import Base, create_registry_engine, create_session_factory
from ..models import Site

logger = logging.getLogger(__name__)


class SiteRegistry:
    def __init__(self, engine: AsyncEngine, session_factory: Optional[async_sessionmaker] = None):
        self.engine = engine
        self.session_factory = session_factory or create_session_factory(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SiteRegistry":
        return cls(create_registry_engine(database_url))

    async def init(self) -> None:
        """Create tables if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("[REGISTRY] Site registry ready")

    async def close(self) -> None:
        await self.engine.dispose()

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get(self, site_id: str) -> Optional[Site]:
        async with self.session_factory() as session:
            return await session.get(Site, site_id)

    async def get_by_name(self, name: str) -> Optional[Site]:
        async with self.session_factory() as session:
            result = await session.execute(select(Site).where(Site.name == name))
            return result.scalar_one_or_none()

    async def get_by_domain(self, domain: str) -> Optional[Site]:
        async with self.session_factory() as session:
            result = await session.execute(select(Site).where(Site.domain == domain.lower()))
            return result.scalars().first()

    async def list(self) -> List[Site]:
        async with self.session_factory() as session:
            result = await session.execute(select(Site).order_by(Site.created, Site.name))
            return list(result.scalars().all())

    async def ports_in_use(self, exclude_site_id: Optional[str] = None) -> Set[int]:
        """Ports recorded on sites, used to keep new sites off each other's ports."""
        async with self.session_factory() as session:
            query = select(Site.port).where(Site.port.is_not(None))
            if exclude_site_id:
                query = query.where(Site.id != exclude_site_id)
            result = await session.execute(query)
            return {port for port in result.scalars().all()}

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def add(self, site: Site) -> Site:
        async with self.session_factory() as session:
            session.add(site)
            await session.commit()
        logger.info(f"[REGISTRY] Added site {site.name} ({site.id})")
        return site

    async def save(self, site: Site) -> Site:
        """
        Persist the current state of a (detached) site record.

        Only updates; a record deleted in the meantime is not re-inserted.
        """
        async with self.session_factory() as session:
            if await session.get(Site, site.id) is None:
                logger.info(f"[REGISTRY] Site {site.id} no longer exists; not saving")
                return site
            await session.merge(site)
            await session.commit()
        return site

    async def delete(self, site_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(Site).where(Site.id == site_id))
            await session.commit()
        logger.info(f"[REGISTRY] Removed site {site_id}")
