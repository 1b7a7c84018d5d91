"""
Exception hierarchy for the provisioning engine.

Only ValidationError and CycleError abort an apply before any side effect.
NodeError subclasses are contained to the failing node and its dependents.
"""
from typing import List, Optional


class ConvergentError(Exception):
    """Base class for every error raised by convergent."""


class ConfigError(ConvergentError):
    pass


class ManifestError(ConvergentError):
    """A manifest file could not be read or has an unsupported structure."""

    def __init__(self, message: str, source_file: str = ""):
        self.source_file = source_file
        if source_file:
            message = f"{source_file}: {message}"
        super().__init__(message)


class StateError(ConvergentError):
    pass


class ValidationError(ConvergentError):
    """Input values or declarations are invalid. Nothing has been applied."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors))


class UnresolvedReferenceError(ValidationError):
    """An expression refers to a node, field or input that does not exist."""


class CycleError(ConvergentError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"dependency cycle: {path}")


class ExpressionError(ConvergentError):
    """An expression could not be parsed or evaluated."""


class UnknownAttributeError(ExpressionError):
    pass


class EngineError(ConvergentError):
    """Internal consistency failure. Indicates a bug in the engine."""


class UnresolvedDependencyError(EngineError):
    pass


# ------------------------------------------------------------------ node-local


class NodeError(ConvergentError):
    """Failure of a single node. Blocks dependents, never siblings."""


class ProviderError(NodeError):
    pass


class ProviderTransientError(ProviderError):
    """Network, throttling or other retryable provider failure."""


class ProviderTerminalError(ProviderError):
    """Invalid configuration or other failure that retrying cannot fix."""


class RetriesExhausted(ProviderError):
    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")


class ActionFailed(NodeError):
    pass


class ActionTimeout(NodeError):
    pass


class ApplyCancelled(NodeError):
    pass
