import logging
import sys

from loguru import logger

NOISY_LIBRARIES = ["httpx", "httpcore", "uvicorn.access"]


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    logger.remove()

    if json:
        logger.add(sys.stderr, level=level, format="{message}", serialize=True)
    else:
        logger.add(
            sys.stderr,
            level=level,
            format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        )

    for lib in NOISY_LIBRARIES:
        logging.getLogger(lib).setLevel(logging.WARNING)

    logger.debug(f"Logging configured (level={level}, json={json})")
