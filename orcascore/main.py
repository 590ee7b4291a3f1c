"""OrcaScore backend entry point.

Starts the FastAPI server the webview front-end talks to.
"""

from __future__ import annotations

import uvicorn

from orcascore.core.config import get_settings
from orcascore.core.logging import get_logger, setup_logging


def main():
    """Entry point: configure logging and serve the API."""
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("main")

    logger.info("=" * 60)
    logger.info("OrcaScore backend starting")
    logger.info("=" * 60)

    if not settings.anthropic_api_key.strip():
        logger.info("ANTHROPIC_API_KEY not set - provider keys must be saved in Settings")

    logger.info("Database: %s", settings.database_path)
    logger.info("API: http://%s:%d", settings.web_host, settings.web_port)

    uvicorn.run(
        "orcascore.web.server:app",
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
