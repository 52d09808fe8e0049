from __future__ import annotations


class DeployFixError(Exception):
    """Base class for deployfix domain errors."""


class NonRetriableError(DeployFixError):
    """
    Raised from inside a step when retrying cannot help (bad credentials, missing resource,
    invalid state). The step engine fails the run immediately instead of burning attempts.
    """


class StepFailed(DeployFixError):
    def __init__(self, step_name: str, attempts: int, cause: BaseException) -> None:
        self.step_name = step_name
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"step {step_name!r} failed after {attempts} attempt(s): {cause}")

    @property
    def error_message(self) -> str:
        return str(self.cause) or type(self.cause).__name__


class InvalidTransition(NonRetriableError):
    def __init__(self, deployment_id: str, current: str, target: str) -> None:
        self.deployment_id = deployment_id
        self.current = current
        self.target = target
        super().__init__(f"deployment {deployment_id}: illegal transition {current} -> {target}")


class NotFound(NonRetriableError):
    pass


class Forbidden(DeployFixError):
    pass


class RetryNotAllowed(DeployFixError):
    pass


class DecryptionError(DeployFixError):
    pass
