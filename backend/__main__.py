"""Run the StudyCards API server: ``python -m backend`` or ``studycards-server``."""

import uvicorn

from backend.config import settings


def main() -> None:
    uvicorn.run(
        "backend.main:app",
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
