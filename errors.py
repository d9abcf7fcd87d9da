class SessionError(Exception):
    """Base class for failures of a user-triggered operation.

    The message is human readable; it is what ends up in the notification
    queue and in HTTP error details.
    """

    default_message = "Operation failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AlreadyBroadcasting(SessionError):
    default_message = "A broadcaster is already active"


class EmptyPlaylist(SessionError):
    default_message = "Playlist is empty, add links before starting the stream"


class InvalidLink(SessionError):
    default_message = "Invalid link"


class StoreUnavailable(SessionError):
    default_message = "Shared state store is unavailable"


class PlaybackCapabilityUnavailable(SessionError):
    default_message = "Player capability unavailable"
