"""Package-manager transport adapters."""

from .alpm import AlpmTransport, AlpmTransportCommand
from .apt import AptMessage, AptTransport, AptTransportCommand, format_message, read_message
from .base import TransportAdapter

__all__ = [
    "AlpmTransport",
    "AlpmTransportCommand",
    "AptMessage",
    "AptTransport",
    "AptTransportCommand",
    "TransportAdapter",
    "format_message",
    "read_message",
]
