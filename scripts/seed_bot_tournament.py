import asyncio
import sys

from sqlalchemy import select

from imaginarena.db.session import SessionLocal
from imaginarena.models.user import User
from imaginarena.services.tournament import create_tournament, fill_with_bots, get_tournament

SEED_ADMIN_ID = 1
SEED_ADMIN_USERNAME = "arena_admin"


async def _ensure_admin(db) -> User:
    # Создаем служебного админа, если его еще нет.
    admin = await db.scalar(select(User).where(User.id == SEED_ADMIN_ID))
    if admin:
        if not admin.is_admin:
            admin.is_admin = True
            await db.commit()
        return admin
    admin = User(id=SEED_ADMIN_ID, username=SEED_ADMIN_USERNAME, is_admin=True, is_bot=False)
    db.add(admin)
    await db.commit()
    return admin


async def main(tournament_size: int = 16) -> None:
    """Создает турнир нужного размера, добивает его ботами и тем самым запускает."""
    async with SessionLocal() as db:
        admin = await _ensure_admin(db)
        tournament = await create_tournament(db, admin.id, tournament_size=tournament_size)
        bots = await fill_with_bots(db, tournament.id, admin.id)
        tournament = await get_tournament(db, tournament.id, fresh=True)
    print(f"Турнир {tournament.id}: добавлено ботов {len(bots)}, статус {tournament.status}.")


if __name__ == "__main__":
    # Запускаем из CLI: python -m scripts.seed_bot_tournament [размер].
    asyncio.run(main(int(sys.argv[1]) if len(sys.argv) > 1 else 16))
