"""
Aggregated warnings.

Non-fatal problems are logged when they happen and collected so that the
CLI can re-emit all of them once at exit, where batch and CI logs will not
bury them.
"""

import logging
from typing import Callable, Optional

logger = logging.getLogger("stackctl")


class WarningCollector:
    """Collects warning messages in first-seen order."""

    def __init__(self):
        self._messages: list[str] = []

    def warn(self, message: str) -> None:
        """Record a warning and log it immediately."""
        logger.warning(message, extra={"event": "warning"})
        self._messages.append(message)

    def warn_once(self, message: str) -> None:
        """Record a warning unless the same message was already seen."""
        if message not in self._messages:
            self.warn(message)

    @property
    def messages(self) -> list[str]:
        """Distinct messages, in the order they were first raised."""
        seen: set[str] = set()
        unique = []
        for message in self._messages:
            if message not in seen:
                seen.add(message)
                unique.append(message)
        return unique

    def __len__(self) -> int:
        return len(self.messages)

    def emit(self, printer: Optional[Callable[[str], None]] = None) -> None:
        """Print every distinct warning once."""
        messages = self.messages
        if not messages:
            return
        if printer is None:
            from stackctl.utils import print_warning

            printer = print_warning
        printer(f"{len(messages)} warning(s) during this run:")
        for message in messages:
            printer(message)
