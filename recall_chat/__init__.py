"""Recall Chat - a conversational agent with durable, self-pruning user memories."""

__version__ = "0.1.0"

from recall_chat.config import Config

__all__ = ["Config", "__version__"]
