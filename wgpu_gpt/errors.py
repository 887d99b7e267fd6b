"""Error taxonomy for the graph engine.

Every failure is raised synchronously to the caller of the operation that
triggered it. Nothing in the engine retries.
"""


class GraphError(Exception):
    """Base class for all graph engine errors."""


class ShapeMismatch(GraphError):
    """Operator input shapes violate the operator's shape rule."""


class UnknownTensor(GraphError):
    """A tensor id does not refer to a live tensor of the graph."""


class DeviceError(GraphError):
    """Kernel compilation or dispatch failed on the GPU device."""


class CheckpointMismatch(GraphError):
    """A training state does not match the live graph's parameter set."""
