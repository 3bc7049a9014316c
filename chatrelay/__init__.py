"""Chat relay server: online users, message routing, friend lookup and file exchange."""

__version__ = "0.1.0"