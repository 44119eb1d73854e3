"""Run the server with ``python -m vidsqueeze``."""

import uvicorn

from vidsqueeze.core.config import settings


def main() -> None:
    uvicorn.run(
        "vidsqueeze.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
        reload=settings.DEBUG,
    )


if __name__ == "__main__":
    main()
