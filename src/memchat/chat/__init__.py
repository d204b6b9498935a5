"""Chat orchestration."""

from memchat.chat.controller import Answer, ChatController, ChatPreview, ChatView, Reply

__all__ = ["Answer", "ChatController", "ChatPreview", "ChatView", "Reply"]
