"""
Miner Logger
============
One static logger for every component: a rich console line per event plus
a per-run log file.

Messages may start with a [SOURCE] tag ("[DEPLOY] Round 501 deployed");
the tag picks the icon and the source column.

    Logger.info("[DEPLOY] Round 501 deployed")
    Logger.success("[CLAIM] Claimed 0.25 SOL")
    Logger.section("Starting loop")

Environment:
    LOG_LEVEL    file log threshold (default INFO)
    LOG_DIR      directory for run logs (default <project>/logs)
    SILENT_MODE  "true" disables console output
"""

import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional, Tuple

from rich.console import Console
from rich.text import Text

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


# =============================================================================
# TAGS AND STYLES
# =============================================================================

SOURCE_ICONS = {
    "SYSTEM": "🛸",
    "LOOP": "🔁",
    "DEPLOY": "⛏️",
    "CLAIM": "💰",
    "STAKE": "🏦",
    "SWAP": "🔄",
    "FEE": "⛽",
    "TX": "📡",
    "CHAIN": "🔗",
    "PRICE": "📈",
    "STRATEGY": "🧠",
    "EVENT": "📋",
}

# level -> (console style, file level, file prefix)
LEVELS = {
    "DEBUG": (None, logging.DEBUG, ""),
    "INFO": ("cyan", logging.INFO, ""),
    "SUCCESS": ("green bold", logging.INFO, "✅ "),
    "WARNING": ("yellow", logging.WARNING, ""),
    "ERROR": ("red bold", logging.ERROR, ""),
    "CRITICAL": ("red bold reverse", logging.CRITICAL, "🛑 "),
}

_MAX_TAG = 14


# =============================================================================
# FILE SINK
# =============================================================================

_file_logger: Optional[logging.Logger] = None


def _run_log() -> logging.Logger:
    """Open the per-run rotating log on first use."""
    global _file_logger
    if _file_logger is not None:
        return _file_logger

    log_dir = os.getenv("LOG_DIR") or os.path.join(_PROJECT_ROOT, "logs")
    os.makedirs(log_dir, exist_ok=True)
    path = os.path.join(log_dir, f"orbminer_{datetime.now():%Y%m%d_%H%M%S}.log")

    handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))

    file_logger = logging.getLogger("orbminer")
    file_logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    file_logger.propagate = False
    file_logger.addHandler(handler)
    _file_logger = file_logger
    return file_logger


def split_tag(message: str) -> Tuple[str, str]:
    """Split a leading [SOURCE] tag off a message; untagged lines are SYSTEM."""
    text = message.strip()
    if text.startswith("["):
        end = text.find("]")
        if 1 < end <= _MAX_TAG + 1:
            return text[1:end].upper(), text[end + 1:].strip()
    return "SYSTEM", message


# =============================================================================
# LOGGER
# =============================================================================

class Logger:
    """Static facade; never instantiated."""

    _console = Console()
    _silent_mode = os.getenv("SILENT_MODE", "false").lower() == "true"

    @classmethod
    def _emit(cls, level: str, message: str) -> None:
        style, file_level, prefix = LEVELS[level]
        source, body = split_tag(message)

        if style is not None and not cls._silent_mode:
            icon = SOURCE_ICONS.get(source, "")
            now = datetime.now()
            line = Text()
            line.append(f"{now:%H:%M:%S}.{now.microsecond // 1000:03d} ", style="dim")
            line.append(f"| {level:<8} ", style=style)
            line.append(f"| {source[:10]:<10} | ", style="dim")
            line.append(f"{icon} {body}" if icon else body)
            cls._console.print(line)

        _run_log().log(file_level, f"[{source}] {prefix}{body}")

    @classmethod
    def debug(cls, message: str) -> None:
        cls._emit("DEBUG", message)

    @classmethod
    def info(cls, message: str) -> None:
        cls._emit("INFO", message)

    @classmethod
    def success(cls, message: str) -> None:
        cls._emit("SUCCESS", message)

    @classmethod
    def warning(cls, message: str) -> None:
        cls._emit("WARNING", message)

    @classmethod
    def error(cls, message: str) -> None:
        cls._emit("ERROR", message)

    @classmethod
    def critical(cls, message: str) -> None:
        cls._emit("CRITICAL", message)

    @classmethod
    def section(cls, title: str) -> None:
        """Horizontal rule between phases of a run."""
        if not cls._silent_mode:
            cls._console.print()
            cls._console.rule(f"[bold magenta]{title}[/]", style="dim")
        _run_log().info(f"=== {title} ===")

    @classmethod
    def set_silent(cls, silent: bool) -> None:
        cls._silent_mode = silent
