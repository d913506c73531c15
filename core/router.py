"""Message router: user allow-list, request logging, executor dispatch, audit."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Dict, Iterable, Optional, Set

from channels.base import BaseChannel, IncomingMessage
from core.executor import AwsExecutor, ExecuteOutput
from utils.helpers import truncate_text

logger = logging.getLogger(__name__)


def _redacted_value(value: str) -> dict:
    raw = str(value).encode("utf-8", errors="replace")
    return {
        "redacted": True,
        "bytes": len(raw),
        "sha256": hashlib.sha256(raw).hexdigest(),
    }


class Router:
    """Route incoming chat messages to the AWS executor."""

    def __init__(
        self,
        executor: AwsExecutor,
        channel: BaseChannel,
        allowed_users: Optional[Iterable[str]] = None,
        audit_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.executor = executor
        self.channel = channel
        self.allowed_users: Set[str] = {str(u) for u in (allowed_users or [])}
        self.audit_logger = audit_logger
        if not self.allowed_users:
            logger.warning("No allowed_users configured for channel '%s'; all users rejected", channel.name)

    def is_authorized(self, user_id: str) -> bool:
        return str(user_id) in self.allowed_users

    async def handle_message(self, message: IncomingMessage) -> None:
        """Handle one normalized incoming message."""
        logger.info(
            "Message from user=%s channel=%s: %s",
            message.user_id,
            message.channel,
            truncate_text(message.text or "", 60),
        )
        start = time.time()

        if not self.is_authorized(message.user_id):
            logger.warning("Unauthorized access: user_id=%s channel=%s", message.user_id, message.channel)
            await self.channel.send_text(message.chat_id, "Unauthorized.")
            return

        result: Optional[ExecuteOutput] = None
        try:
            await self.channel.send_typing(message.chat_id)
            result = await self.executor.execute(message.text)
            await self.channel.send_text(message.chat_id, result.message)
        except Exception:
            logger.error("Unhandled error processing message from user=%s", message.user_id, exc_info=True)
            await self.channel.send_text(message.chat_id, "Internal error, please retry later.")
        finally:
            elapsed = time.time() - start
            logger.info(
                "Processed user=%s in %.2fs state=%s",
                message.user_id,
                elapsed,
                result.state.value if result else "error",
            )
            self._audit(message, result, elapsed)

    def _audit(self, message: IncomingMessage, result: Optional[ExecuteOutput], elapsed: float) -> None:
        if self.audit_logger is None:
            return
        event: Dict[str, object] = {
            "ts": time.time(),
            "channel": message.channel,
            "chat_id": message.chat_id,
            "user_id": message.user_id,
            "command": message.text,
            "duration_ms": int(elapsed * 1000),
        }
        if result is not None:
            event["state"] = result.state.value
            event["is_error"] = result.is_error
            event["exit_code"] = result.exit_code
            event["output"] = _redacted_value(result.message)
        else:
            event["state"] = "internal_error"
        self.audit_logger.info(json.dumps(event, ensure_ascii=False, sort_keys=True))
