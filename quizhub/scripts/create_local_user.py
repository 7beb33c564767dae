"""
Script to create a password account for local testing.
"""

import argparse
import asyncio
from typing import Optional

from quizhub.core.auth import hash_password
from quizhub.core.database import get_session_context, init_db
from quizhub.models.user import User
from quizhub.schemas.auth import normalize_username
from quizhub.services.credentials import CredentialStore


async def create_user(
    email: str,
    username: str,
    password: str,
    *,
    verified: bool = False,
    session_context=get_session_context,
) -> Optional[User]:
    """Create the account unless the email or username is taken. Returns the new user."""
    async with session_context() as session:
        store = CredentialStore(session)

        if await store.is_email_taken(email):
            print(f"User {email} already exists.")
            return None
        if await store.is_username_taken(username):
            print(f"Username {username} is already taken.")
            return None

        user = await store.create_user(email, username, hash_password(password))
        if verified:
            user = await store.set_email_verified(user)
        print(f"Created user: {user.email} (id {user.id})")
        return user


async def main(args: argparse.Namespace) -> None:
    if args.init_db:
        await init_db()
    await create_user(
        args.email,
        normalize_username(args.username),
        args.password,
        verified=args.verified,
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a local user.")
    parser.add_argument("--email", required=True, help="Email address for the user")
    parser.add_argument("--username", required=True, help="Username for the user")
    parser.add_argument("--password", required=True, help="Password for the user")
    parser.add_argument("--verified", action="store_true", help="Mark the email as verified")
    parser.add_argument("--init-db", action="store_true", help="Create tables first")

    asyncio.run(main(parser.parse_args()))
