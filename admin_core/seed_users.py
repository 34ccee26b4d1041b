"""
Database seeding script for the initial admin staff.

Creates one SUPER_ADMIN plus an ADMIN, a MODERATOR and a SUPPORT user so
the admin area can be exercised in development, and prints a bearer token
for each (tokens are normally issued by the upstream identity service).
Run this script after database is set up but before first use.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from admin_core.app.db.session import AsyncSessionLocal, Base, engine
from admin_core.app.core.jwt import create_access_token
from admin_core.app.models.enums import Role
from admin_core.app.models.user import User

STAFF = [
    ("root", "root@admin-core.local", Role.SUPER_ADMIN),
    ("admin", "admin@admin-core.local", Role.ADMIN),
    ("moderator", "moderator@admin-core.local", Role.MODERATOR),
    ("support", "support@admin-core.local", Role.SUPPORT),
]


async def seed_users():
    """
    Seed initial staff accounts.

    Existing usernames are left untouched, so the script can be re-run.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting staff seeding...")

        seeded = []
        for username, email, role in STAFF:
            result = await db.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if user is not None:
                print(f"ℹ️  {role.value} '{username}' already exists, skipping")
            else:
                user = User(email=email, username=username, role=role)
                db.add(user)
                await db.flush()
                print(f"✅ Created {role.value} user (username: {username})")
            seeded.append(user)

        await db.commit()

        print("\n🎉 Staff seeding completed successfully!")
        print("\nDevelopment tokens:")
        for user in seeded:
            token = create_access_token(data={"sub": user.username, "user_id": user.id, "role": user.role.value})
            print(f"  - {user.role.value:<12} {user.username}: {token}")
        print("\nNote: marketplace users are created by the upstream identity service")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed_users())
