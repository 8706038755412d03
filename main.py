"""Entry point — serve the Engine API with the deployment scheduler running."""

import uvicorn

from core.config import get_settings
from core.logging_config import setup_logging


def main():
    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.log_json)
    uvicorn.run(
        "api.server:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
