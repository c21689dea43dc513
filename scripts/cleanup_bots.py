import asyncio

from imaginarena.db.session import SessionLocal
from imaginarena.services.bots import cleanup_inactive_bots


async def main() -> None:
    """Удаляет ботов, которые не участвуют ни в одном активном турнире."""
    async with SessionLocal() as db:
        removed = await cleanup_inactive_bots(db)
    print(f"Удалено неактивных ботов: {removed}.")


if __name__ == "__main__":
    asyncio.run(main())
