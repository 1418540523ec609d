from __future__ import annotations
import logging
import os
from logging.handlers import RotatingFileHandler

from signal_relay.settings import LoggingSettings

_NOISY = ("httpx", "httpcore", "uvicorn.access")


def configure_logging(cfg: LoggingSettings) -> None:
    """
    Configure the root logger from settings: console always, rotating file when
    `logging.file` is set. Safe to call more than once.
    """
    level = getattr(logging, str(cfg.level).upper(), logging.INFO)
    formatter = logging.Formatter(fmt=cfg.format, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, "_signal_relay", False):
            root.removeHandler(handler)
            handler.close()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if cfg.file:
        os.makedirs(os.path.dirname(cfg.file) or ".", exist_ok=True)
        handlers.append(RotatingFileHandler(
            cfg.file,
            maxBytes=cfg.max_mb * 1024 * 1024,
            backupCount=cfg.backups,
            encoding="utf-8",
        ))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._signal_relay = True
        root.addHandler(handler)

    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)


def mask_token(token: str | None, keep: int = 6) -> str:
    if not token:
        return "<none>"
    return f"{token[:keep]}..." if len(token) > keep else "***"
