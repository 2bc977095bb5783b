"""
main.py - Main entry point for the CheckMyHouse dashboard service
"""
import logging

import uvicorn

from checkmyhouse.config import get_config
from checkmyhouse.rest_api import create_api

logger = logging.getLogger(__name__)


def main():
    """
    Start the CheckMyHouse server.
    """
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    api = create_api(config)
    app = api.get_app()

    logger.info("Starting CheckMyHouse on %s:%d", config.host, config.port)
    if config.clickhouse_url:
        logger.info("Default ClickHouse connection: %s (user %s)", config.clickhouse_url, config.clickhouse_user)
    logger.info("Features: cache=%s, rate_limit=%s", config.enable_cache, config.enable_rate_limit)

    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
