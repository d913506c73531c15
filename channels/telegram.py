"""
Telegram channel implementation
"""
import asyncio
import logging
import re
from typing import Optional

from telegram import Update
from telegram.ext import Application, MessageHandler, filters, ContextTypes
from telegram.constants import ParseMode

from channels.base import BaseChannel, IncomingMessage
from core.formatter import OutputFormatter

logger = logging.getLogger(__name__)


class TelegramChannel(BaseChannel):
    """Telegram Bot implementation (text commands only)"""

    name = "telegram"

    def __init__(self, config: dict):
        super().__init__(config)

        self.token = config['token']
        self.parse_mode = ParseMode.HTML if config.get('parse_mode', 'HTML') == 'HTML' else ParseMode.MARKDOWN_V2
        self.max_length = config.get('max_message_length', 4096)

        self.app: Optional[Application] = None
        self.bot_username: Optional[str] = None
        self.formatter = OutputFormatter(config)
        self._handler_tasks: set[asyncio.Task] = set()

        logger.info("TelegramChannel initialized")

    async def start(self):
        """Start Telegram bot"""
        self.app = Application.builder().token(self.token).build()
        self.app.add_handler(MessageHandler(filters.TEXT, self._on_message))

        await self.app.initialize()
        me = await self.app.bot.get_me()
        self.bot_username = me.username.lower() if me.username else None
        await self.app.start()
        await self.app.updater.start_polling()

        logger.info("Telegram bot started as @%s", self.bot_username)

    async def stop(self):
        """Stop bot gracefully"""
        if self._handler_tasks:
            for task in list(self._handler_tasks):
                task.cancel()
            await asyncio.gather(*self._handler_tasks, return_exceptions=True)
            self._handler_tasks.clear()
        if self.app:
            await self.app.updater.stop()
            await self.app.stop()
            await self.app.shutdown()
            logger.info("Telegram bot stopped")

    async def _dispatch_message(self, msg: IncomingMessage):
        """Run message handler in a background task so update polling stays responsive."""
        if not self._message_handler:
            return
        try:
            await self._message_handler(msg)
        except Exception as e:
            logger.error("Message handler error: %s", e, exc_info=True)
            await self.send_text(msg.chat_id, "Internal error while handling the command.")

    @staticmethod
    def _strip_markup_for_plain(text: str) -> str:
        """Strip simple HTML markers before plain-text fallback sending"""
        text = re.sub(r'<[^>]+>', '', text)
        text = text.replace("&lt;", "<").replace("&gt;", ">")
        text = text.replace("&quot;", '"').replace("&#39;", "'")
        return text.replace("&amp;", "&")

    async def send_text(self, chat_id: str, text: str) -> Optional[int]:
        """Send text message with automatic pagination. Returns message_id of first chunk."""
        if not self.app:
            logger.error("Cannot send message: bot not started")
            return None

        text = self.formatter.render_for_channel(text, "telegram")
        chunks = self.formatter.split_message(text)

        first_message_id = None
        for chunk in chunks:
            try:
                msg = await self.app.bot.send_message(
                    chat_id=int(chat_id),
                    text=chunk,
                    parse_mode=self.parse_mode
                )
            except Exception as e:
                logger.error("Failed to send message: %s", e)
                # Retry as plain text without parse mode
                try:
                    msg = await self.app.bot.send_message(
                        chat_id=int(chat_id),
                        text=self._strip_markup_for_plain(chunk)
                    )
                except Exception as e2:
                    logger.error("Failed to send message even without parse mode: %s", e2)
                    continue
            if first_message_id is None:
                first_message_id = msg.message_id

        return first_message_id

    async def send_typing(self, chat_id: str):
        """Send typing indicator"""
        if not self.app:
            return

        try:
            await self.app.bot.send_chat_action(
                chat_id=int(chat_id),
                action="typing"
            )
        except Exception as e:
            logger.error("Failed to send typing indicator: %s", e)

    def extract_command(self, text: str) -> Optional[str]:
        """
        Turn a chat message into a command line

        Accepts ``/aws ...`` (optionally ``/aws@botname``) and plain text.
        Returns None for other slash commands.
        """
        stripped = (text or "").strip()
        if not stripped.startswith('/'):
            if self.bot_username:
                stripped = re.sub(rf"@{re.escape(self.bot_username)}\b", "", stripped, flags=re.IGNORECASE)
            return stripped.strip()

        head, _, rest = stripped.partition(' ')
        name = head[1:].split('@', 1)[0].lower()
        if name in ("aws", "start", "help"):
            return rest.strip() if name == "aws" else ""
        return None

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle incoming message"""
        if not update.message or not update.effective_user:
            return

        text = update.message.text or ""
        is_private = update.effective_chat.type == "private"

        if not is_private:
            # In groups, only respond to slash commands or mentions
            is_command = text.strip().startswith('/')
            is_mention = bool(self.bot_username) and f"@{self.bot_username}" in text.lower()
            if not (is_command or is_mention):
                logger.debug("Ignoring group message (not mention/command)")
                return

        command = self.extract_command(text)
        if command is None:
            logger.debug("Ignoring unrelated slash command: %s", text.split()[0])
            return

        sender = update.effective_user
        msg = IncomingMessage(
            channel=self.name,
            chat_id=str(update.effective_chat.id),
            user_id=str(sender.id),
            text=command,
            is_private=is_private,
            sender_username=sender.username,
            message_id=update.message.message_id,
        )

        if self._message_handler:
            task = asyncio.create_task(self._dispatch_message(msg))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
