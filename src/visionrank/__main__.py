"""Run the API with uvicorn: ``python -m visionrank``."""

from __future__ import annotations

import uvicorn

from visionrank.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "visionrank.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
