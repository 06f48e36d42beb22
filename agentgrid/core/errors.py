"""Error taxonomy raised by the orchestration core."""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for every error surfaced by the core.

    ``code`` is the stable name used by the HTTP layer and in logs;
    ``retryable`` marks transient conditions a caller may retry with backoff.
    """

    code = "OrchestrationError"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class DuplicateAgent(OrchestrationError):
    code = "DuplicateAgent"


class UnknownAgent(OrchestrationError):
    code = "UnknownAgent"


class DuplicateTask(OrchestrationError):
    code = "DuplicateTask"


class UnknownTask(OrchestrationError):
    code = "UnknownTask"


class DuplicateResource(OrchestrationError):
    code = "DuplicateResource"


class UnknownResource(OrchestrationError):
    code = "UnknownResource"


class InvalidAmount(OrchestrationError):
    code = "InvalidAmount"


class OverRelease(OrchestrationError):
    code = "OverRelease"


class ResourceTimeout(OrchestrationError):
    code = "ResourceTimeout"
    retryable = True


class QueueFull(OrchestrationError):
    code = "QueueFull"
    retryable = True


class DeadlineExceeded(OrchestrationError):
    code = "DeadlineExceeded"


class ProposalConflict(OrchestrationError):
    code = "ProposalConflict"


class AgentUnavailable(OrchestrationError):
    code = "AgentUnavailable"


class CapabilityMismatch(OrchestrationError):
    code = "CapabilityMismatch"


class InvalidTransition(OrchestrationError):
    code = "InvalidTransition"
