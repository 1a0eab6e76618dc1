# Toolsmith/core_logic/errors.py
from typing import Iterable, List


class ToolsmithError(Exception):
    """Base for every error raised by the compiler and workflow core.

    Must not subclass ValueError: pydantic validators re-wrap ValueError.
    """


class MalformedDiscoveryError(ToolsmithError):
    """Discovery data violates a structural invariant of the schema model."""


class UnsafeOperationRejected(ToolsmithError):
    """The compiler refused a descriptor that would break a safety rule."""

    def __init__(self, resource: str, operation: str, reason: str):
        super().__init__(f"{operation} on {resource} rejected: {reason}")
        self.resource = resource
        self.operation = operation
        self.reason = reason


class ProvisioningBlocked(ToolsmithError):
    """A versioned insert was requested before table setup succeeded."""


class CollaboratorFailure(ToolsmithError):
    """An external collaborator failed; error_text is the original message, verbatim."""

    def __init__(self, collaborator: str, error_text: str):
        super().__init__(f"{collaborator} failed: {error_text}")
        self.collaborator = collaborator
        self.error_text = error_text


class InputIncomplete(ToolsmithError):
    """The current workflow state needs more operator input."""

    def __init__(self, fields: Iterable[str]):
        self.fields: List[str] = list(fields)
        super().__init__(f"Missing required input: {', '.join(self.fields)}")
