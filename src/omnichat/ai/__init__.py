"""AI transport, tools and conversation orchestration."""

from .client import ChatCompletionsClient, ClientSettings

__all__ = ["ChatCompletionsClient", "ClientSettings"]
