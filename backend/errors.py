"""Exception hierarchy shared by the session, rendezvous and transfer layers."""


class GalaxyError(Exception):
    """Base class for every error raised by the engine."""


# --- Rendezvous ---

class RendezvousError(GalaxyError):
    """The rendezvous collaborator could not complete an operation."""


class RegistrationConflict(RendezvousError):
    """Another device already holds the requested identity."""

    def __init__(self, identity: str):
        super().__init__(f"Identity {identity} is already registered")
        self.identity = identity


class TransportError(RendezvousError):
    """Network or server failure talking to the rendezvous service."""


class PeerUnavailable(RendezvousError):
    """The dialed identity is not registered or cannot be reached."""

    def __init__(self, identity: str):
        super().__init__(f"Device {identity} not found or offline")
        self.identity = identity


# --- Channels ---

class ChannelClosedError(GalaxyError):
    """Operation attempted on a channel that is already closed."""


class ChannelError(GalaxyError):
    """The channel failed while open."""


# --- Sessions ---

class DialError(GalaxyError):
    """A dial was refused before any channel was opened.

    ``reason`` is one of ``self-dial``, ``duplicate`` or ``not-ready``.
    """

    SELF_DIAL = "self-dial"
    DUPLICATE = "duplicate"
    NOT_READY = "not-ready"

    def __init__(self, reason: str, identity: str):
        super().__init__(f"Cannot dial {identity}: {reason}")
        self.reason = reason
        self.identity = identity


class PairingError(GalaxyError):
    """Accept/reject called for a connection with no pending pairing request."""


# --- Transfers ---

class TransferError(GalaxyError):
    """A transfer could not be started or carried out."""

    NOT_PAIRED = "not-paired"

    def __init__(self, message: str, reason: str = ""):
        super().__init__(message)
        self.reason = reason


class ConnectionClosedError(TransferError):
    """The connection closed while a file was being sent."""

    def __init__(self, identity: str):
        super().__init__(f"Connection to {identity} closed", reason="closed")
        self.identity = identity


class FileReadError(TransferError):
    """A local file could not be read while sending."""

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"Failed to read {path}: {cause}", reason="read-error")
        self.path = path
