"""Application layer: orchestration services and the chat engine facade."""

from medchat.application.chat_engine import ChatEngine

__all__ = ["ChatEngine"]
