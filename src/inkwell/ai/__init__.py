"""AI client, stream handling, tools and the conversation loop."""

from .client import AIClient, ApproxByteCounter, ClientSettings

__all__ = ["AIClient", "ClientSettings", "ApproxByteCounter"]
