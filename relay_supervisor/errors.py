"""Exceptions raised by the relay supervisor."""


class RelayError(Exception):
    """Base class for supervisor errors."""


class ConfigurationError(RelayError):
    """Missing or invalid address, unknown slot or action."""


class ConflictError(RelayError):
    """A transition for the slot is already in flight."""


class SubprocessSpawnError(RelayError):
    """The ffmpeg process could not be launched."""


class SubprocessCrash(RelayError):
    """The ffmpeg process exited while it was expected to run."""

    def __init__(self, slot: str, returncode: int | None):
        self.slot = slot
        self.returncode = returncode
        super().__init__(f"{slot}: ffmpeg exited with code {returncode}")


class StoreIOError(RelayError):
    """The state document could not be written."""


class DocumentDecodeError(RelayError):
    """The state document on disk is not valid JSON or violates the schema."""


class InvalidTransition(RelayError):
    """A run state change that is not an edge of the slot state machine."""
