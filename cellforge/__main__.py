"""Run the API server: ``python -m cellforge``."""

import uvicorn

from cellforge.core.config import settings


def main() -> None:
    uvicorn.run(
        "cellforge.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_config=None,
    )


if __name__ == "__main__":
    main()
