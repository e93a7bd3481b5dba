"""
Error types shared by the extractor, normalizer, orchestrator and HTTP layer.
"""


class ConfigurationError(RuntimeError):
    """A required credential or setting is missing."""


class PlanParseError(ValueError):
    """Model output could not be turned into a JSON plan object."""


class PathEscapeError(ValueError):
    """A plan path resolves outside the sandbox project root."""


class CollaboratorError(RuntimeError):
    """The language model or the site analysis service failed."""


class SandboxError(RuntimeError):
    """A sandbox operation failed. `logs` holds captured command output, if any."""

    def __init__(self, message: str, logs: str = ""):
        super().__init__(message)
        self.logs = logs
