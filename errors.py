"""Error types raised by the reconstruction scene graph."""


class ReconstructionError(Exception):
    """Base class of all reconstruction errors."""


class NotFoundError(ReconstructionError, KeyError):
    """Identifier is absent in the relevant store."""

    def __str__(self) -> str:
        # KeyError quotes its message
        return str(self.args[0]) if self.args else ""


class DuplicateIdError(ReconstructionError, ValueError):
    """Identifier collision on insert."""


class InvalidTrackError(ReconstructionError, ValueError):
    """Track references an already triangulated or malformed observation."""


class InvalidArgumentError(ReconstructionError, ValueError):
    """Parameter outside of its domain."""


class InvalidStateError(ReconstructionError, RuntimeError):
    """Operation not allowed in the current lifecycle state."""


class ReconstructionIOError(ReconstructionError, OSError):
    """Reading or writing a model failed."""
