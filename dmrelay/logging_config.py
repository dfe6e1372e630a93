from __future__ import annotations

import logging
import os
from pathlib import Path

from .config import RelayRuntimeConfig

CLIENT_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def parse_level(value: str | int | None, default: int = logging.INFO) -> int:
    """Map a level name ("debug", "warn", ...) or number onto a logging level."""

    if isinstance(value, int):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    if text == "WARN":
        return logging.WARNING
    if text.isdigit():
        return int(text)
    return logging.getLevelNamesMapping().get(text, default)


def _relay_file_handler(path: str) -> logging.FileHandler:
    # The relay log records user names and addresses: owner-only.
    p = Path(os.path.expanduser(os.path.expandvars(path)))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    os.chmod(p, 0o600)
    return handler


def _install(handlers: list[logging.Handler], formatter: logging.Formatter, level: int) -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(level)


def configure_logging(
    cfg: RelayRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Configure logging for the relay process.

    Console output follows ``cfg.log_console``; a log file is opened when
    ``override_file`` (from ``--log-file``) or the ``[logging] file`` key of
    the relay config names one. Repeated calls replace the root handlers.
    """

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    log_file = (override_file or "").strip() or cfg.log_file
    if log_file:
        handlers.append(_relay_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=(cfg.log_format or "").strip() or RelayRuntimeConfig.log_format,
        datefmt=cfg.log_datefmt or None,
    )
    _install(handlers, formatter, parse_level(override_level or cfg.log_level))
    logging.captureWarnings(True)


def configure_client_logging(level: str | int | None = "WARNING") -> None:
    """Console-only logging for ``dmrelay-client``.

    The client shares the terminal with the chat prompt, so it logs terse
    lines to stderr and never writes files.
    """

    _install(
        [logging.StreamHandler()],
        logging.Formatter(CLIENT_LOG_FORMAT),
        parse_level(level, logging.WARNING),
    )
