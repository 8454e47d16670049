"""
Bootstrap script: creates a verified admin account if it does not exist yet.

Usage:
    python -m telecare.scripts.create_admin --email admin@example.com --password 'Str0ng!pass'

Values may also come from ADMIN_EMAIL / ADMIN_PASSWORD / ADMIN_FIRST_NAME / ADMIN_LAST_NAME.
"""
import argparse
import asyncio
import os
import sys

from telecare.constants import Role
from telecare.database import close_db, init_db
from telecare.errors import ApiError
from telecare.services import credential_store


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the first admin account")
    parser.add_argument("--email", default=os.getenv("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.getenv("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default=os.getenv("ADMIN_FIRST_NAME", "System"))
    parser.add_argument("--last-name", default=os.getenv("ADMIN_LAST_NAME", "Admin"))
    return parser.parse_args(argv)


async def create_admin(email: str, password: str, first_name: str, last_name: str) -> bool:
    """Return True when a new admin was created, False when the email is already taken."""
    existing = await credential_store.find_by_email(email)
    if existing:
        print(f"[SKIP] User '{email}' already exists (role: {existing.role.value})")
        return False

    user = await credential_store.create_user(
        first_name=first_name,
        last_name=last_name,
        email=email,
        password=password,
        role=Role.ADMIN,
        email_verified=True,
        profile_completed=True,
    )
    print(f"[OK] Created admin: {user.full_name} ({user.email})")
    return True


async def main(argv=None) -> int:
    args = parse_args(argv)
    if not args.email or not args.password:
        print("[ERROR] --email and --password are required")
        return 1

    await init_db()
    try:
        await create_admin(args.email, args.password, args.first_name, args.last_name)
    except ApiError as e:
        print(f"[ERROR] {e.message}")
        return 1
    finally:
        close_db()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
