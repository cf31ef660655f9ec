"""Runtime entrypoint for the booking engine API."""
import argparse
import asyncio
import logging
import os

import uvicorn
from rich.logging import RichHandler

from booking_engine.app.core.constants import LOG_LEVEL_NAME, _env_bool


# ==============================================================
# LOGGING CONFIG
# ==============================================================

# Console: INFO / WARNING / ERROR (Rich)
console_handler = RichHandler(
    rich_tracebacks=True,
    markup=False,
    show_time=True,
    show_level=True,
    show_path=False,
    log_time_format="%H:%M:%S",
)

# File: WARNING+ only
file_handler = logging.FileHandler(os.getenv("LOG_FILE", "booking_engine.log"), encoding="utf-8")
file_handler.setLevel(logging.WARNING)
file_handler.setFormatter(logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
))

_level = getattr(logging, LOG_LEVEL_NAME, logging.INFO)

logging.basicConfig(
    level=_level,       # configurable via LOG_LEVEL
    format="%(message)s",
    handlers=[console_handler, file_handler],
)

logger = logging.getLogger("booking_engine")


# Quieter third-party loggers; warnings still pass
logging.getLogger("asyncpg").setLevel(logging.WARNING)
logging.getLogger("alembic").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ==============================================================
# BOOTSTRAP
# ==============================================================

async def maybe_seed() -> None:
    """Optionally seed the demo calendar (RUN_BOOTSTRAP)."""
    from booking_engine.app.core.bootstrap import init_demo_calendar
    from booking_engine.app.core.db import dispose_engine

    if not _env_bool("RUN_BOOTSTRAP"):
        return

    logger.info("[bootstrap] Running…")
    try:
        cal_id = await init_demo_calendar()
    except Exception as e:
        logger.error("[bootstrap] Failed: %s", e)
        return
    finally:
        # the server runs on a different event loop
        await dispose_engine()
    if cal_id is not None:
        logger.info("[bootstrap] Demo calendar ready (id=%s)", cal_id)


# ==============================================================
# MAIN
# ==============================================================

def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Booking engine API server")
    parser.add_argument("--host", default=os.getenv("API_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("API_PORT", "8000")))
    parser.add_argument("--seed", action="store_true", help="seed the demo calendar before serving")
    args = parser.parse_args(argv)

    if args.seed:
        os.environ.setdefault("RUN_BOOTSTRAP", "1")
    asyncio.run(maybe_seed())

    logger.info("Starting API on %s:%s", args.host, args.port)
    uvicorn.run(
        "booking_engine.api.app:app",
        host=args.host,
        port=args.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
