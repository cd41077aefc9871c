from __future__ import annotations

import logging

from .config import Settings, _env_bool

logger = logging.getLogger("coach_pipeline")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def main() -> None:
    import uvicorn

    configure_logging()
    settings = Settings.from_env()
    try:
        settings.validate()
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc

    reload_enabled = _env_bool("COACH_RELOAD", False)
    logger.info("Starting coaching pipeline on %s:%d", settings.host, settings.port)
    uvicorn.run(
        "coach_pipeline.web:app",
        host=settings.host,
        port=settings.port,
        reload=reload_enabled,
        log_config=None,
    )


if __name__ == "__main__":
    main()
