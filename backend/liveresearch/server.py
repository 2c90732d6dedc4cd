from __future__ import annotations

import uvicorn

from liveresearch.core.config import get_settings


def main() -> None:
    """Serve the API with uvicorn on the configured host and port."""

    settings = get_settings()
    uvicorn.run(
        "liveresearch.main:app",
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
