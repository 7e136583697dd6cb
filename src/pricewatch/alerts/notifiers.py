# src/pricewatch/alerts/notifiers.py
from __future__ import annotations

from typing import Protocol

import structlog

log = structlog.get_logger("notifier")


class Notifier(Protocol):
    async def send(self, recipient: int | str, text: str) -> bool:
        """Deliver once. True on success; False (never raise) on failure."""
        ...


class ConsoleNotifier:
    """Prints alerts instead of delivering them (dry runs, local dev)."""

    def __init__(self, stream=None):
        self._stream = stream

    async def send(self, recipient: int | str, text: str) -> bool:
        try:
            print(f"[ALERT -> {recipient}]\n{text}", file=self._stream, flush=True)
        except (OSError, ValueError) as e:
            log.warning("console_send_failed", err=str(e))
            return False
        return True
