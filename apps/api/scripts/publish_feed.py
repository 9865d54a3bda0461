"""Create or update the feed-generator record for a feed slug."""

import argparse
import asyncio
import os
import sys

# Add parent dir to path to find the app modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker
from services.feed_records import publish_feed_record
from services.network import AtprotoClient, NetworkError


async def main(args: argparse.Namespace) -> int:
    async with AtprotoClient() as client, async_session_maker() as db:
        try:
            result = await publish_feed_record(db, client, args.slug, args.did)
        except (LookupError, NetworkError) as e:
            print(f"❌ Publish failed: {e}")
            return 1
    if result["changed"]:
        print(f"✅ Published {result['uri']}")
    else:
        print(f"👌 {result['uri']} already up to date")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("slug")
    parser.add_argument("--did", required=True, help="owner account DID the feed is published under")
    sys.exit(asyncio.run(main(parser.parse_args())))
