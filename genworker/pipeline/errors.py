"""
Exception types raised by the generation pipeline.

Every error carries a machine-readable ``code`` so routes can surface it to
the caller without string matching.
"""

from typing import Optional


class PipelineError(Exception):
    code = "pipeline_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class EntitlementDenied(PipelineError):
    """The account's tier does not permit the requested configuration."""

    code = "entitlement_denied"

    def __init__(self, message: str, rule: str, required_tier: str):
        super().__init__(message)
        self.rule = rule
        self.required_tier = required_tier


class InsufficientCredits(PipelineError):
    code = "insufficient_funds"

    def __init__(self, required: int, balance: int):
        super().__init__(
            f"Insufficient credits: {required} required, {balance} available."
        )
        self.required = required
        self.balance = balance


class JobNotFound(PipelineError):
    code = "job_not_found"


class InvalidJobState(PipelineError):
    code = "invalid_job_state"


class StoreConflict(PipelineError):
    """An optimistic update lost the race against another writer."""

    code = "store_conflict"


class CapabilityError(PipelineError):
    """An external provider call failed or returned an unusable result."""

    code = "capability_error"

    def __init__(self, message: str, provider: str = "", retryable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable
