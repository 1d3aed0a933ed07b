"""Main application entry point."""

import logging
import os

import uvicorn
from dotenv import load_dotenv

# Load environment variables before settings are first read
load_dotenv()

from offertory.api.webhook import app  # noqa: E402
from offertory.config import get_settings  # noqa: E402
from offertory.services.logging import setup_server_logging  # noqa: E402

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the API server."""
    settings = get_settings()
    setup_server_logging(settings.log_file)

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting %s %s on %s:%s", settings.api_title, settings.api_version, host, port)

    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
