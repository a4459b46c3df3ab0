from __future__ import annotations

import asyncio

from fieldbill.core.logging import configure_logging
from fieldbill.domain.models import Base
from fieldbill.persistence.db import engine


async def init_db() -> None:
    # Create any missing tables; existing tables are left untouched.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print(f"tables_ready={len(Base.metadata.tables)}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(init_db())
