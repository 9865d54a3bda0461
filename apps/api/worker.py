"""Worker process entrypoint: job loop plus content indexer."""

import asyncio
import logging
import signal

from config import resolve_worker_id, settings, validate_security_settings
from database import Base, engine
import models  # noqa: F401
from services.ai_images import ImageProvider
from services.blob_store import LocalBlobStore
from services.indexer import ContentIndexer
from services.network.client import AtprotoClient
from services.worker_loop import WorkerLoop

logger = logging.getLogger("worker")


async def main():
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    worker_id = resolve_worker_id()
    client = AtprotoClient()
    provider = ImageProvider()
    worker = WorkerLoop(
        worker_id=worker_id,
        client=client,
        provider=provider,
        blob_store=LocalBlobStore(),
    )
    indexer = ContentIndexer(client=client) if settings.INDEXER_ENABLED else None
    if indexer is not None:
        indexer.start()
    else:
        logger.info("indexer_disabled")

    try:
        await worker.run_forever(stop_event)
    finally:
        if indexer is not None:
            await indexer.stop()
        await provider.aclose()
        await client.aclose()
        await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    asyncio.run(main())
