class RelayError(Exception):
    """Base class for failures reported back to the requesting client."""

    default_message = "Request failed."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MalformedMessage(RelayError):
    default_message = "Malformed message."


class DuplicateSessionKey(RelayError):
    default_message = "A session with this key already exists."


class SessionNotFound(RelayError):
    default_message = "Session not found."


class InvalidCode(RelayError):
    default_message = "Invalid or inactive session code."


class CodeAlreadyInUse(RelayError):
    default_message = "This code is already in use."


class ConnectionAlreadyClassified(RelayError):
    default_message = "This connection is already attached to a session."
