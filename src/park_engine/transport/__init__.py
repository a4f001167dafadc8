"""Observer transports."""

from .base import Observer, parse_client_message

__all__ = ['Observer', 'parse_client_message']
