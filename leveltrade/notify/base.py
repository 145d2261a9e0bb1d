"""Notification channel protocol and the logging fallback."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

logger = logging.getLogger("leveltrade.notify")

CommandHandler = Callable[[list[str]], Awaitable[Optional[str]]]


@runtime_checkable
class NotificationChannel(Protocol):
    """Outbound alerts plus inbound ``/commands``."""

    def notify(self, message: str) -> None:
        """Fire-and-forget; delivery failures never reach the caller."""
        ...

    def on_command(self, name: str, handler: CommandHandler) -> None:
        ...


class LogNotifier:
    """Writes notifications to the log; commands are dispatched via :meth:`handle`."""

    def __init__(self) -> None:
        self.messages: list[str] = []
        self._commands: dict[str, CommandHandler] = {}

    def notify(self, message: str) -> None:
        self.messages.append(message)
        logger.info("NOTIFY %s", message)

    def on_command(self, name: str, handler: CommandHandler) -> None:
        self._commands[name.lstrip("/").lower()] = handler

    @property
    def commands(self) -> list[str]:
        return sorted(self._commands)

    async def handle(self, text: str) -> Optional[str]:
        """Run a ``/command arg ...`` line and return its reply."""
        return await dispatch_command(self._commands, text)

    async def run(self) -> None:
        """Nothing to poll; idles so it can be scheduled like the Telegram notifier."""
        await asyncio.Event().wait()


async def dispatch_command(commands: dict[str, CommandHandler], text: str) -> Optional[str]:
    """Parse ``/name args`` and call the registered handler."""
    parts = text.strip().split()
    if not parts or not parts[0].startswith("/"):
        return None
    name = parts[0][1:].split("@", 1)[0].lower()
    handler = commands.get(name)
    if handler is None:
        return f"Unknown command /{name}. Available: " + ", ".join(
            f"/{c}" for c in sorted(commands)
        )
    return await handler(parts[1:])
