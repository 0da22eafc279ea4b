"""Error taxonomy shared by every instance operation.

Message text is part of the public contract: the control plane and its
remote consumers branch on it, so raise sites pass the documented strings
verbatim.
"""
from __future__ import annotations


class MinectlError(RuntimeError):
    """Base class for lifecycle engine failures."""


class ValidationError(MinectlError):
    """Raised for bad names, unknown server types, or invalid start arguments."""


class StateError(MinectlError):
    """Raised when an operation violates a lifecycle precondition."""


class ChannelError(MinectlError):
    """Raised when the supervised process' I/O channel is not available."""


class NotSupportedError(MinectlError):
    """Raised for operations or request symbols the engine does not model."""


__all__ = [
    "ChannelError",
    "MinectlError",
    "NotSupportedError",
    "StateError",
    "ValidationError",
]
