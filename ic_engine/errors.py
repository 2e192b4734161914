"""
IC Engine - Error Types
=======================

Exceptions raised by the reconstruction engine.

NotFoundError, InvalidGeometryError and InvalidOperationError are raised
before anything is mutated: a command either applies completely or not at all.
CorruptedProjectError aborts a load/import before any object is added.

Template matching cancellation is NOT an error (see MatchStatus.CANCELLED).
"""


class EngineError(Exception):
    """Base class for all engine errors."""
    pass


class NotFoundError(EngineError, LookupError):
    """Raised when an object, template, layer or module ID is unknown."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"Unknown {kind}: {identifier}")


class InvalidGeometryError(EngineError, ValueError):
    """Raised when geometry lies outside the layer bounds or a template
    does not fit the search area."""
    pass


class InvalidOperationError(EngineError):
    """Raised when a command does not apply to the object (for example
    interconnecting an annotation)."""
    pass


class CorruptedProjectError(EngineError):
    """Raised when a project or template document is structurally invalid."""
    pass
