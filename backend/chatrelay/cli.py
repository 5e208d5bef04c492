"""Create a user account and print an access token for it.

Usage:
    chatrelay-create-user --email ada@example.com --name "Ada Lovelace" --password yourpassword
"""
import argparse
import asyncio
import sys

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.core.database import async_session, init_models
from chatrelay.core.security import create_access_token, hash_password
from chatrelay.models.user import User


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a chat relay user")
    parser.add_argument("--email", required=True, help="Email address")
    parser.add_argument("--name", required=True, help="Full name, shown to the assistant")
    parser.add_argument("--password", required=True, help="Password")
    parser.add_argument("--skip-create-tables", action="store_true", help="Do not create missing tables")
    return parser


async def create_user(
    session_factory: async_sessionmaker[AsyncSession], email: str, name: str, password: str
) -> User | None:
    """Insert the user; None when the email is already registered."""
    async with session_factory() as session:
        existing = (await session.execute(select(User).where(User.email == email))).scalar_one_or_none()
        if existing:
            return None

        user = User(email=email, full_name=name, hashed_password=hash_password(password))
        session.add(user)
        await session.commit()
        return user


async def run(args: argparse.Namespace, session_factory=async_session) -> int:
    if not args.skip_create_tables:
        await init_models()

    user = await create_user(session_factory, args.email, args.name, args.password)
    if user is None:
        print(f"User with email {args.email} already exists.")
        return 1

    print(f"User created: {user.email} ({user.id})")
    print(f"Access token: {create_access_token(user.id)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
