"""
Chat Client Package

Provides the connection engine and its event channel.
"""

from .connection_manager import ConnectionManager
from .events import ClientEvent, EventBus, EventType

__all__ = ["ConnectionManager", "ClientEvent", "EventBus", "EventType"]
