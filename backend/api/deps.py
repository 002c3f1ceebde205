"""
BasketSync API Dependencies

Dependency injection for DB sessions and the process-wide sync runners.
"""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import AsyncSessionLocal
from workers.inventory_sync import InventorySyncRunner
from workers.sync import OrderSyncOrchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_order_sync(request: Request) -> OrderSyncOrchestrator:
    return request.app.state.order_sync


def get_inventory_sync(request: Request) -> InventorySyncRunner:
    return request.app.state.inventory_sync
