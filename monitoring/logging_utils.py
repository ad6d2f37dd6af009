import logging
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# aiohttp and urllib3 are chatty at DEBUG; keep them at WARNING unless asked otherwise.
NOISY_LOGGERS = ("aiohttp.access", "urllib3", "asyncio")


def resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Union[int, str, None] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging for the bot.

    Called once from the entrypoint or the API lifespan. Subsequent calls are ignored
    when the root logger already has handlers.
    """
    if logging.getLogger().handlers:
        return

    logging.basicConfig(level=resolve_level(level), format=log_format or DEFAULT_FORMAT)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
