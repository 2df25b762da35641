"""Create the database schema: ``python -m listingmirror.app.init_db``."""

import asyncio

from .core.database import init_db
from .core.logging import configure_logging, logger


async def main() -> None:
    await init_db()
    logger.info("Database tables created")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
