"""
Utility functions for stackctl.

Includes logging, console output, secret name heuristics, one-time pad
encoding and small parsing helpers.
"""

import base64
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape


# Global consoles for pretty output
console = Console()
err_console = Console(stderr=True)

PAD_LENGTH = 128

_SECRET_SUFFIXES = ("password", "secret", "key", "cert", "token", "cookie", "kubeconfig")
_SECRET_WHITELIST = ("cloud.sshKey",)


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "pretty",
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for stackctl.

    Args:
        log_file: Optional path to a log file (always structured JSON)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable) for the console
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("stackctl")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers
    logger.propagate = False

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=err_console, rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())

        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "component"):
            log_data["component"] = record.component
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def looks_like_secret(name: str) -> bool:
    """
    Guess whether a parameter or output name holds a secret.

    Matches bare words (``password``) and suffixes such as ``db.password``,
    ``db_password``, ``dbPassword`` and ``DB_PASSWORD``.
    """
    if name in _SECRET_WHITELIST:
        return False
    for word in _SECRET_SUFFIXES:
        capitalized = word[0].upper() + word[1:]
        if name == word or name.endswith(("." + word, "_" + word, capitalized, word.upper())):
            return True
    return False


def parse_kv_list(text: Optional[str]) -> dict[str, str]:
    """
    Parse "key=value,key2=value2" into a dictionary.

    Raises:
        ValueError: If a pair has no "=" or an empty key
    """
    result: dict[str, str] = {}
    if not text:
        return result
    for pair in text.split(","):
        pair = pair.strip()
        if not pair:
            continue
        if "=" not in pair:
            raise ValueError(f"Expected key=value, got `{pair}`")
        key, value = pair.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Empty key in `{pair}`")
        result[key] = value.strip()
    return result


def split_paths(text: Optional[str]) -> list[str]:
    """Split a comma-separated list, dropping empty entries."""
    if not text:
        return []
    return [part.strip() for part in text.split(",") if part.strip()]


def merge_unique(*lists: Iterable[str]) -> list[str]:
    """Concatenate lists keeping the first occurrence of every item."""
    merged: list[str] = []
    for items in lists:
        for item in items:
            if item not in merged:
                merged.append(item)
    return merged


def random_pad() -> str:
    """Generate a one-time pad seed: raw (unpadded) base64 of random bytes."""
    return _b64encode(os.urandom(PAD_LENGTH))


def otp_encode(data: bytes, pad: str) -> str:
    """
    Encode data with a one-time pad.

    The data is zero-padded to the pad length, XORed with the pad, and
    returned as raw base64.

    Raises:
        ValueError: If the data is longer than the pad
    """
    random = _b64decode(pad)
    if len(data) > len(random):
        raise ValueError(
            f"Input length of {len(data)} bytes is larger than one-time pad length of {len(random)} bytes"
        )
    padded = data.ljust(len(random), b"\0")
    return _b64encode(bytes(a ^ b for a, b in zip(padded, random)))


def otp_decode(encoded: str, pad: str) -> bytes:
    """
    Decode data encoded with otp_encode, truncating at the first NUL byte.

    Raises:
        ValueError: If the input is not base64 or its length does not match the pad
    """
    random = _b64decode(pad)
    try:
        data = _b64decode(encoded)
    except ValueError as e:
        raise ValueError(f"Unable to decode base64 input: {e}")
    if len(data) != len(random):
        raise ValueError(
            f"Input length of {len(data)} bytes is not equal to one-time pad length of {len(random)} bytes"
        )
    decoded = bytes(a ^ b for a, b in zip(data, random))
    nul = decoded.find(b"\0")
    return decoded if nul == -1 else decoded[:nul]


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    text = text.strip()
    return base64.b64decode(text + "=" * (-len(text) % 4), validate=True)


_ANSI = re.compile(r"\x1b\[[0-9;]*m")


def strip_color(text: str) -> str:
    """Remove ANSI color sequences."""
    return _ANSI.sub("", text)


def as_text(value: Any) -> str:
    """Render a value the way it is exported to a process environment."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_banner(title: str) -> None:
    """
    Print a banner to console.

    Args:
        title: Banner title
    """
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {escape(message)}", highlight=False)


def print_error(message: str) -> None:
    """Print error message to stderr."""
    err_console.print(f"[bold red]✗[/bold red] {escape(message)}", highlight=False)


def print_warning(message: str) -> None:
    """Print warning message to stderr."""
    err_console.print(f"[bold yellow]⚠[/bold yellow] {escape(message)}", highlight=False)


def print_info(message: str) -> None:
    """Print info message to console."""
    console.print(f"[bold cyan]ℹ[/bold cyan] {escape(message)}", highlight=False)
