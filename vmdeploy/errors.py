"""Project-specific exception types.

Fatal errors (:class:`PreconditionFailure`, :class:`BuildFailure`,
:class:`PlanFailure`, :class:`InventoryError`) abort a run.
:class:`SourceUnavailable` and :class:`ProbeTimeout` are absorbed into the
reachability report.
"""

from __future__ import annotations


class DeployError(RuntimeError):
    """Base error for domain-level vmdeploy failures."""

    stage = 'run'


class PreconditionFailure(DeployError):
    """Raised when required settings, credentials, or host tools are missing."""

    stage = 'validating'

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = list(problems or [])
        if self.problems:
            message = message + '\n' + '\n'.join(f'  - {p}' for p in self.problems)
        super().__init__(message)


class BuildFailure(DeployError):
    """Raised when the template builder exits non-zero."""

    stage = 'template_build'

    def __init__(self, message: str, log_path: str = ''):
        self.log_path = log_path
        if log_path:
            message = f'{message} (builder log: {log_path})'
        super().__init__(message)


class PlanFailure(DeployError):
    """Raised when a terraform sub-step fails; ``plan_stage`` names it."""

    stage = 'planning'

    def __init__(self, plan_stage: str, message: str):
        self.plan_stage = plan_stage
        super().__init__(f'terraform {plan_stage} failed: {message}')


class InventoryError(DeployError):
    """Raised when the inventory artifact is missing or unreadable."""

    stage = 'verifying'


class SourceUnavailable(DeployError):
    """An address source (management system, guest session) gave no answer."""

    def __init__(self, source: str, detail: str):
        self.source = source
        self.detail = detail
        super().__init__(f'{source}: {detail}')


class ProbeTimeout(DeployError):
    """A reachability probe did not get an answer in time."""
