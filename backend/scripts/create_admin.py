"""
Create an ADMIN account, or promote an existing one.

    ADMIN_EMAIL=admin@agro.gh ADMIN_PASSWORD=... python scripts/create_admin.py
"""
import asyncio
import os
import sys
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from config import AsyncSessionLocal, init_db
from models import User, Profile, UserRole
from routers.auth.helpers import auth_helpers

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("create_admin")


async def create_admin(email: str, password: str) -> None:
    await init_db()
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if user:
            user.role = UserRole.ADMIN.value
            user.is_suspended = False
            user.is_active = True
            logger.info(f"Promoted existing user {email} to ADMIN")
        else:
            user = User(
                email=email,
                password_hash=auth_helpers.hash_password(password),
                role=UserRole.ADMIN.value,
                is_verified=True,
                profile=Profile(first_name="Platform", last_name="Admin")
            )
            db.add(user)
            logger.info(f"Created ADMIN {email}")

        await db.commit()


def main() -> None:
    email = os.getenv("ADMIN_EMAIL")
    password = os.getenv("ADMIN_PASSWORD")
    if not email or not password:
        sys.exit("ADMIN_EMAIL and ADMIN_PASSWORD must be set")
    if AsyncSessionLocal is None:
        sys.exit("DATABASE_URL must be set")
    asyncio.run(create_admin(email.strip().lower(), password))


if __name__ == "__main__":
    main()
