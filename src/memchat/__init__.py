"""memchat: a chatbot with tiered semantic, episodic and long-term memory."""

__version__ = "0.1.0"

from memchat.chat.controller import ChatController, Reply
from memchat.config import Config
from memchat.storage.pool import StorePool

__all__ = [
    "__version__",
    "ChatController",
    "Config",
    "Reply",
    "StorePool",
]
