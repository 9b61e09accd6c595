class PulseWatchError(Exception):
    """Base class for errors raised by the monitoring pipeline."""


class NotificationError(PulseWatchError):
    """A notification could not be delivered to its channel."""

    def __init__(self, channel_type: str, message: str):
        self.channel_type = channel_type
        super().__init__(f"{channel_type}: {message}")


class IncidentStateError(PulseWatchError):
    """A manual incident operation is not allowed in the incident's current state."""


class UnknownJobKindError(PulseWatchError):
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No handler registered for job kind '{kind}'")
