"""Outbound message senders used by flow nodes."""
from channels.sender import (
    HttpMessageSender,
    MessageSender,
    StoreMessageSender,
    build_message,
    create_sender,
)

__all__ = [
    "MessageSender", "StoreMessageSender", "HttpMessageSender",
    "build_message", "create_sender",
]
