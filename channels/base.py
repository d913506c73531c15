"""
Base classes for message channels
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Callable, Awaitable


@dataclass
class IncomingMessage:
    """Unified message format from any channel"""
    channel: str  # "telegram"
    chat_id: str  # Channel-specific chat identifier
    user_id: str  # User unique identifier
    text: str  # Message text
    is_private: bool = True
    sender_username: Optional[str] = None
    message_id: Optional[int] = None


class BaseChannel(ABC):
    """Abstract base class for message channels"""

    name = "base"

    def __init__(self, config: dict):
        self.config = config
        self._message_handler: Optional[Callable[[IncomingMessage], Awaitable[None]]] = None

    @abstractmethod
    async def start(self):
        """Start listening for messages"""
        pass

    @abstractmethod
    async def stop(self):
        """Gracefully stop the channel"""
        pass

    @abstractmethod
    async def send_text(self, chat_id: str, text: str):
        """Send text message, automatically handling pagination"""
        pass

    async def send_typing(self, chat_id: str):
        """Send 'typing...' status; channels without one ignore it"""
        return None

    def set_message_handler(self, handler: Callable[[IncomingMessage], Awaitable[None]]):
        """Register message callback"""
        self._message_handler = handler
