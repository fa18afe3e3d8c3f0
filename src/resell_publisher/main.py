"""Main entry point for the Resell Publisher service."""

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from resell_publisher.config import get_settings


def setup_logging() -> None:
    """Configure application logging."""
    settings = get_settings()

    log_format = (
        '{"time": "%(asctime)s", "level": "%(levelname)s", '
        '"logger": "%(name)s", "message": "%(message)s"}'
        if settings.log_format == "json"
        else "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format=log_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # httpx logs full request URLs at INFO, including OAuth query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> None:
    """Run the Resell Publisher server."""
    # Load environment variables from .env file
    load_dotenv()

    # Set up logging
    setup_logging()

    settings = get_settings()
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting Resell Publisher",
        extra={
            "service_name": settings.service_name,
            "ebay_environment": settings.ebay_environment,
            "host": settings.service_host,
            "port": settings.service_port,
        },
    )

    # Import app here to ensure environment is configured
    from resell_publisher.api.app import create_app

    app = create_app()

    uvicorn.run(
        app,
        host=settings.service_host,
        port=settings.service_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
