"""Run the webhook and dashboard server: ``python -m salesbot``."""

import logging
import os

import uvicorn

from salesbot.api import create_app
from salesbot.config import SalesbotConfig
from salesbot.runtime import Salesbot


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = SalesbotConfig.from_env()
    bot = Salesbot.from_config(config)
    uvicorn.run(create_app(bot), host=config.http_host, port=config.http_port, log_config=None)


if __name__ == "__main__":
    main()
