"""Chat relay: local history and at-least-once delivery of chat events to a logging backend."""

__version__ = "1.0.0"
