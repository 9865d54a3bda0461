"""Log a network account in with an app password and store its encrypted session."""

import argparse
import asyncio
import os
import sys

# Add parent dir to path to find the app modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker
from services.network import AtprotoClient, NetworkError
from services.network.sessions import save_account_session


async def main(args: argparse.Namespace) -> int:
    password = args.password or os.getenv("BSKY_APP_PASSWORD", "")
    if not password:
        print("❌ Provide --password or BSKY_APP_PASSWORD")
        return 1

    async with AtprotoClient(service=args.service) as client:
        try:
            session = await client.create_session(args.identifier, password)
        except NetworkError as e:
            print(f"❌ Login failed: {e}")
            return 1

    async with async_session_maker() as db:
        account = await save_account_session(db, args.user_id, session)
    print(f"✅ Connected {account.handle} ({account.did}) for user {args.user_id}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--identifier", required=True, help="handle or DID")
    parser.add_argument("--password", default="", help="app password (defaults to BSKY_APP_PASSWORD)")
    parser.add_argument("--service", default=None, help="PDS URL")
    sys.exit(asyncio.run(main(parser.parse_args())))
