"""
Session Models

SessionState is the aggregate root for one onboarding attempt. It is stored
whole as a JSON snapshot in the session cache; every field round-trips
through model_dump_json / model_validate_json.
"""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SessionPreferences(BaseModel):
    language: Literal["es", "en"] = "es"
    communication_style: Literal["formal", "informal"] = "informal"
    ai_assistance_level: Literal["minimal", "moderate", "extensive"] = "moderate"
    auto_save: bool = True
    notifications: bool = True


class PreferencesUpdate(BaseModel):
    """Partial preferences; only the fields that are set get applied."""
    model_config = ConfigDict(extra="forbid")

    language: Optional[Literal["es", "en"]] = None
    communication_style: Optional[Literal["formal", "informal"]] = None
    ai_assistance_level: Optional[Literal["minimal", "moderate", "extensive"]] = None
    auto_save: Optional[bool] = None
    notifications: Optional[bool] = None


class SessionFlags(BaseModel):
    """
    Independent status booleans. Combinations such as paused + has_errors are
    legitimate; completed + expired is not.
    """
    is_paused: bool = False
    is_completed: bool = False
    has_errors: bool = False
    needs_validation: bool = False
    is_expired: bool = False
    force_refresh: bool = False

    @model_validator(mode="after")
    def _terminal_states_exclusive(self) -> "SessionFlags":
        if self.is_completed and self.is_expired:
            raise ValueError("A session cannot be both completed and expired")
        return self


class FlagsUpdate(BaseModel):
    """Flags a caller may set directly. Lifecycle flags belong to the manager."""
    model_config = ConfigDict(extra="forbid")

    has_errors: Optional[bool] = None
    needs_validation: Optional[bool] = None
    force_refresh: Optional[bool] = None


class SessionMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_agent: str = ""
    ip_address: str = ""
    referrer: Optional[str] = None
    utm: Dict[str, str] = Field(default_factory=dict)
    experiment_group: Optional[str] = None
    version: str = "1.0"


class StepTransition(BaseModel):
    from_step: int
    to_step: int
    direction: Literal["forward", "backward"]
    triggered_by: Literal["user", "system", "timeout"] = "user"
    timestamp: float
    reason: Optional[str] = None


class SessionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current_step: Optional[int] = None
    step_data: Optional[Dict[str, Any]] = None
    preferences: Optional[PreferencesUpdate] = None
    flags: Optional[FlagsUpdate] = None


class SessionState(BaseModel):
    """
    The state of a single user's onboarding attempt.
    """
    session_id: str
    user_id: str
    current_step: int = 1
    completed_steps: List[int] = Field(default_factory=list)
    step_data: Dict[int, Dict[str, Any]] = Field(default_factory=dict)
    started_at: float
    last_activity: float
    estimated_time_remaining: int = 0  # minutes
    preferences: SessionPreferences = Field(default_factory=SessionPreferences)
    flags: SessionFlags = Field(default_factory=SessionFlags)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    history: List[StepTransition] = Field(default_factory=list)

    @field_validator("completed_steps")
    @classmethod
    def _sorted_unique(cls, value: List[int]) -> List[int]:
        return sorted(set(value))

    @property
    def is_active(self) -> bool:
        return not (self.flags.is_expired or self.flags.is_completed)

    def mark_step_completed(self, step_number: int) -> bool:
        """Add a step to completed_steps. Returns True if it was newly added."""
        if step_number in self.completed_steps:
            return False
        self.completed_steps = sorted(set(self.completed_steps) | {step_number})
        return True

    def data_for(self, step_number: int) -> Dict[str, Any]:
        return dict(self.step_data.get(step_number) or {})

    def merge_step_data(self, step_number: int, data: Dict[str, Any]) -> Dict[str, Any]:
        merged = {**self.step_data.get(step_number, {}), **data}
        self.step_data[step_number] = merged
        return merged

    def completion_percentage(self, total_steps: int) -> float:
        if total_steps <= 0:
            return 0.0
        step_based = self.current_step / total_steps * 100
        completed_based = len(self.completed_steps) / total_steps * 100
        return min(100.0, max(step_based, completed_based))

    def record_transition(self, transition: StepTransition, limit: int = 50) -> None:
        self.history.append(transition)
        if len(self.history) > limit:
            self.history = self.history[-limit:]
