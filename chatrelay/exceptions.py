"""
Exception hierarchy for the relay service.

Configuration errors are fatal at startup. Everything else is raised by one
pipeline stage and handled (logged, retained or dropped) by its caller.
"""


class RelayError(Exception):
    """Base exception for the relay service."""
    pass


class ConfigurationError(RelayError):
    """Required configuration is missing or invalid."""
    pass


class StoreError(RelayError):
    """The local history database rejected a read or write."""
    pass


class QueueError(RelayError):
    """The queue backend rejected a send, receive or delete."""
    pass


class BlobStoreError(RelayError):
    """A media blob could not be uploaded to the object store."""
    pass


class DeliveryError(RelayError):
    """An envelope could not be delivered to the logging backend."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedEnvelopeError(RelayError):
    """A queue message body is not a valid envelope."""
    pass


class ProtocolError(RelayError):
    """
    Raised by the messaging-protocol collaborator.

    Lookups (group info, contacts), downloads and sends report failures
    with this type so the relay can fall back or drop the affected item.
    """
    pass
