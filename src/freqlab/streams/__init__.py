"""Streaming primitives: line framing, broadcast channels, multiplexing."""

from .channel import ChannelClosed, EventChannel, Subscription
from .framing import LineFramer
from .multiplexer import LogStreamMultiplexer

__all__ = [
    "ChannelClosed",
    "EventChannel",
    "Subscription",
    "LineFramer",
    "LogStreamMultiplexer",
]
