"""
Domain exceptions raised by the Swiss engine and the broadcast channel.

Routes translate these into HTTP errors; the WebSocket handler reports
them back to the sending connection and keeps the socket open.
"""


class NotFoundError(ValueError):
    """A referenced stage, match, or team does not exist. Not retryable."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidStageError(ValueError):
    """The stage exists but cannot be used for the requested operation."""


class ConcurrentModificationError(RuntimeError):
    """
    Two pairing requests raced on the same stage.

    The caller should retry the whole round generation after a short delay.
    """


class EventValidationError(ValueError):
    """Malformed broadcast event: unknown event name or bad payload."""


class TransientDeliveryError(RuntimeError):
    """An event could not be delivered because no connection was ready."""
