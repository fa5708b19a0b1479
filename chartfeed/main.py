"""Entry point — starts the chart feed API."""

import sys

import uvicorn
from loguru import logger

from chartfeed.config import settings


def main():
    # Configure logging
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level,
    )
    logger.add(
        settings.log_file,
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
    )

    logger.info("=" * 60)
    logger.info("  Chart Feed — live candles and indicators")
    logger.info("=" * 60)
    logger.info(f"API: http://{settings.api_host}:{settings.api_port}")
    logger.info(f"Feed: {settings.stream_url}")

    from chartfeed.api.main import create_app

    app = create_app()
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
