"""Capabilities package for Recall Chat."""

from recall_chat.capabilities.registry import (
    BoundCapability,
    Capability,
    CapabilityContext,
    CapabilityRegistry,
    get_capability_registry,
    set_capability_registry,
)
from recall_chat.capabilities.random_number import RandomNumberCapability

__all__ = [
    "BoundCapability",
    "Capability",
    "CapabilityContext",
    "CapabilityRegistry",
    "get_capability_registry",
    "set_capability_registry",
    "RandomNumberCapability",
]
