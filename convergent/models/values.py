"""
Sensitive value tagging.

A Sensitive wraps a resolved value that must never be printed, logged or
persisted in plaintext. Anything derived from a Sensitive is Sensitive too.
"""
from typing import Any

MASK = "(sensitive value)"


class Sensitive:
    __slots__ = ("value",)

    def __init__(self, value: Any):
        # Never double-wrap
        while isinstance(value, Sensitive):
            value = value.value
        self.value = value

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, Sensitive):
            return self.value == other.value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("sensitive", repr(type(self.value))))

    def __repr__(self) -> str:
        return "Sensitive(***)"

    __str__ = __repr__


def is_sensitive(value: Any) -> bool:
    return isinstance(value, Sensitive)


def contains_sensitive(value: Any) -> bool:
    """True if the value or anything nested inside it is Sensitive."""
    if isinstance(value, Sensitive):
        return True
    if isinstance(value, dict):
        return any(contains_sensitive(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_sensitive(v) for v in value)
    return False


def reveal(value: Any) -> Any:
    """Strip every Sensitive wrapper, recursively. Only for provider calls and comparisons."""
    if isinstance(value, Sensitive):
        return reveal(value.value)
    if isinstance(value, dict):
        return {k: reveal(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [reveal(v) for v in value]
    return value


def mask(value: Any) -> Any:
    """Replace every Sensitive value with a placeholder, keeping the surrounding structure."""
    if isinstance(value, Sensitive):
        return MASK
    if isinstance(value, dict):
        return {k: mask(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [mask(v) for v in value]
    return value


def derive(result: Any, *inputs: Any) -> Any:
    """Tag ``result`` as Sensitive when any of ``inputs`` carries sensitivity."""
    if any(contains_sensitive(i) for i in inputs):
        return Sensitive(reveal(result))
    return result
