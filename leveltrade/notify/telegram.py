"""Telegram Bot API notifier and command poller.

Outbound messages go through ``sendMessage``; inbound ``/commands`` are
read with ``getUpdates`` long polling and answered in the same chat.
Delivery failures are logged and never raised to the trading core.
"""

import asyncio
import logging
from typing import Optional

import httpx

from leveltrade.notify.base import CommandHandler, dispatch_command

logger = logging.getLogger("leveltrade.notify")

_API_URL = "https://api.telegram.org"
_MAX_MESSAGE_LENGTH = 4096
_POLL_TIMEOUT = 30  # seconds, server-side long poll


class TelegramNotifier:
    """Telegram channel for one chat.

    Args:
        bot_token: Bot API token.
        chat_id: Chat that receives notifications and may send commands.
    """

    def __init__(self, bot_token: str, chat_id: str, api_url: str = _API_URL) -> None:
        self._base_url = f"{api_url.rstrip('/')}/bot{bot_token}"
        self._chat_id = str(chat_id)
        self._commands: dict[str, CommandHandler] = {}
        self._offset: Optional[int] = None
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    # ── Outbound ─────────────────────────────────────────────────────────

    def notify(self, message: str) -> None:
        """Schedule delivery of *message* without waiting for it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop; dropping notification: %s", message)
            return
        task = loop.create_task(self.send(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send(self, message: str) -> bool:
        """Deliver *message*; returns ``False`` (and logs) on any failure."""
        payload = {
            "chat_id": self._chat_id,
            "text": message[:_MAX_MESSAGE_LENGTH],
            "disable_web_page_preview": True,
        }
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    f"{self._base_url}/sendMessage", json=payload, timeout=15.0
                )
            resp.raise_for_status()
            return True
        except httpx.HTTPError as exc:
            logger.error("Telegram sendMessage failed: %s", exc)
            return False

    async def flush(self) -> None:
        """Wait for in-flight deliveries (used at shutdown)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ── Inbound ──────────────────────────────────────────────────────────

    def on_command(self, name: str, handler: CommandHandler) -> None:
        self._commands[name.lstrip("/").lower()] = handler

    async def poll_once(self) -> int:
        """Fetch pending updates and answer commands; returns commands handled."""
        params: dict = {"timeout": _POLL_TIMEOUT, "allowed_updates": '["message"]'}
        if self._offset is not None:
            params["offset"] = self._offset
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(
                    f"{self._base_url}/getUpdates",
                    params=params,
                    timeout=_POLL_TIMEOUT + 10,
                )
            resp.raise_for_status()
            updates = resp.json().get("result", [])
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("Telegram getUpdates failed: %s", exc)
            return 0

        handled = 0
        for update in updates:
            self._offset = int(update["update_id"]) + 1
            message = update.get("message") or {}
            text = message.get("text", "")
            chat = str((message.get("chat") or {}).get("id", ""))
            if chat != self._chat_id or not text.startswith("/"):
                continue
            reply = await dispatch_command(self._commands, text)
            handled += 1
            if reply:
                await self.send(reply)
        return handled

    async def run(self) -> None:
        """Long-poll for commands until :meth:`stop`."""
        self._running = True
        while self._running:
            handled = await self.poll_once()
            if handled == 0:
                await asyncio.sleep(1)

    def stop(self) -> None:
        self._running = False
