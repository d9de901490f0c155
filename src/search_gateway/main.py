"""Main entry point for the search gateway."""

import logging

import uvicorn

from search_gateway.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> None:
    """Run the API server."""
    logger.info(f"Starting Search Gateway on {settings.api_host}:{settings.api_port}")
    uvicorn.run(
        "search_gateway.api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
