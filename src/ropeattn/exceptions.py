"""Exception types raised while building rotary bases and running attention."""

from __future__ import annotations


class RopeError(ValueError):
    """Base class for invalid or unusable RoPE configurations."""


class MissingParameterError(RopeError):
    """A parameter required by the selected rope type is absent."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Missing required RoPE parameter: {name}")


class InvalidFactorError(RopeError):
    """The scaling factor is present but out of range."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid factor: {reason}")


class InvalidParameterError(RopeError):
    """A parameter is present but violates a range or relation."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid parameter: {reason}")


class UnsupportedRopeTypeError(RopeError):
    """The rope type is recognised but has no frequency computation."""

    def __init__(self, rope_type: object) -> None:
        self.rope_type = rope_type
        value = getattr(rope_type, "value", rope_type)
        super().__init__(f"Unsupported RoPE type: {value}")


class ShapeMismatchError(ValueError):
    """Tensor shapes do not satisfy an attention or rotation precondition."""
