"""
Onboarding Session Errors

Typed failures surfaced by the session manager to its callers. Validation and
boundary errors are meant for user-facing correction and are never retried;
persistence errors are raised only after the bounded cache retries ran out.
"""

from typing import List, Optional


class OnboardingError(Exception):
    """Base class for all session engine failures."""
    pass


class NotFoundError(OnboardingError):
    """Raised when a session or a step is unknown."""
    pass


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionExpiredError(OnboardingError):
    """Raised by mutating calls on a session that is no longer live."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session has expired: {session_id}")


class InvalidStepError(OnboardingError):
    def __init__(self, step_number: int, max_step: Optional[int] = None):
        self.step_number = step_number
        self.max_step = max_step
        bound = f" (valid: 1..{max_step})" if max_step else ""
        super().__init__(f"Invalid step number: {step_number}{bound}")


class StepValidationError(OnboardingError):
    """Raised when the current step's data blocks progression."""

    def __init__(self, step_number: int, errors: List[str]):
        self.step_number = step_number
        self.errors = list(errors)
        super().__init__(f"Cannot proceed from step {step_number}: {', '.join(self.errors)}")


class StepBoundaryError(OnboardingError):
    """Raised when navigating past the first step or past completion."""
    pass


class SessionCompletedError(StepBoundaryError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session is already completed: {session_id}")


class IncompleteSessionError(OnboardingError):
    """Raised when completion is requested before every step is done."""

    def __init__(self, session_id: str, missing_steps: List[int]):
        self.session_id = session_id
        self.missing_steps = list(missing_steps)
        super().__init__(
            f"Cannot complete session {session_id}: steps {self.missing_steps} are not completed"
        )


class PersistenceUnavailableError(OnboardingError):
    """Raised when the session cache stays unreachable after retries."""
    pass
