#!/usr/bin/env python3
"""Create (or promote) a staff account so the moderation queue has someone to notify.

Usage:
    python scripts/seed_staff.py admin@example.com 'a-long-password' --role admin
"""
import argparse
import asyncio

# Add parent to path
import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from src.auth import hash_password
from src.db.engine import engine, async_session, import_all_tables
from src.db.tables import Base
from src.db.user_tables import UserRow
from src.models.moderation import STAFF_ROLES


async def seed(email: str, password: str, role: str, display_name: str | None) -> int:
    import_all_tables()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        user = (await session.execute(select(UserRow).where(UserRow.email == email))).scalar_one_or_none()
        if user is None:
            user = UserRow(
                email=email,
                password_hash=hash_password(password),
                display_name=display_name,
                role=role,
                is_active=True,
            )
            session.add(user)
            action = "Created"
        else:
            user.role = role
            user.is_active = True
            action = "Promoted"
        await session.commit()
        print(f"✓ {action} {email} ({role}) id={user.id}")

    await engine.dispose()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("--role", default="moderator", choices=sorted(r.value for r in STAFF_ROLES))
    parser.add_argument("--name", default=None)
    args = parser.parse_args()
    return asyncio.run(seed(args.email, args.password, args.role, args.name))


if __name__ == "__main__":
    exit(main())
