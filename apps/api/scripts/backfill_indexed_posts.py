"""One-shot author-feed backfill into indexed_posts for one account."""

import argparse
import asyncio
import os
import sys

# Add parent dir to path to find the app modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker
from services.indexed_posts import rows_from_author_feed, upsert_indexed_posts
from services.network import AtprotoClient


async def main(args: argparse.Namespace) -> int:
    async with AtprotoClient() as client:
        actor = args.actor
        if not actor.startswith("did:"):
            actor = await client.resolve_handle(actor)
        print(f"🔍 Fetching up to {args.limit} posts for {actor}...")
        items = await client.get_author_feed(actor, limit=args.limit)

    rows = rows_from_author_feed(items, fallback_did=actor, source="backfill")
    async with async_session_maker() as db:
        count = await upsert_indexed_posts(db, rows)
        await db.commit()
    print(f"✅ Upserted {count} posts for {actor}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("actor", help="handle or DID")
    parser.add_argument("--limit", type=int, default=100)
    sys.exit(asyncio.run(main(parser.parse_args())))
