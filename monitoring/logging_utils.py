import logging
from typing import Optional, Union

_NOISY_LOGGERS = ("websockets", "aiohttp.access", "asyncio")


def resolve_level(level: Union[int, str, None]) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level or "INFO").upper(), logging.INFO)


def setup_logging(level: Union[int, str, None] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    """
    if logging.getLogger().handlers:
        return

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=resolve_level(level), format=fmt)
    # Per-frame websocket chatter drowns out transition lines
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
