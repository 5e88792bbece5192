import asyncio

from pve_dashboard.db import configure_sqlite_runtime, create_schema, engine


async def init_db() -> None:
    await configure_sqlite_runtime()
    await create_schema()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_db())
    print("schema created")
