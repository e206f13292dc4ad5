"""
Core error taxonomy.

Delivery errors raised by outbound transports live in channels/base.py;
everything here is raised by the core itself.
"""
from __future__ import annotations


class AutomationError(Exception):
    """Base exception for the automation core."""


class ValidationError(AutomationError):
    """Malformed input rejected synchronously (never enters the queue)."""

    def __init__(self, message: str, errors: list[str] = None):
        self.errors = errors or [message]
        super().__init__(message)


class ConfigurationError(AutomationError):
    """Invalid configuration: bad settings value or an unusable rule."""


class StateConflict(AutomationError):
    """A conditional write lost a race (e.g. another worker claimed the item)."""


class NotFoundError(AutomationError):
    pass


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class RuleNotFoundError(NotFoundError):
    def __init__(self, rule_id: int):
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} not found")
