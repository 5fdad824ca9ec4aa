from pydantic import BaseModel, Field
from typing import Any, List, Literal, Optional

FieldType = Literal["text", "textarea", "select", "multiselect", "email", "number"]


class FieldOption(BaseModel):
    value: str
    label: str


class FieldDefinition(BaseModel):
    name: str
    type: FieldType = "text"
    label: Optional[str] = None
    placeholder: Optional[str] = None
    required: bool = False
    min: Optional[float] = Field(None, description="Inclusive lower bound for number fields")
    max: Optional[float] = Field(None, description="Inclusive upper bound for number fields")
    options: List[FieldOption] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.label or self.name


class StepDefinition(BaseModel):
    step_number: int = Field(..., ge=1)
    step_name: str
    title: str = ""
    description: str = ""
    fields: List[FieldDefinition] = Field(default_factory=list)
    hints: List[str] = Field(default_factory=list)
    estimated_time_minutes: Optional[int] = None  # catalog default applies when unset

    @property
    def required_fields(self) -> List[FieldDefinition]:
        return [f for f in self.fields if f.required]


def parse_steps(raw: Any) -> List[StepDefinition]:
    """Parse a catalog payload (list, or mapping keyed by step number)."""
    if isinstance(raw, dict):
        raw = list(raw.values())
    steps = [StepDefinition.model_validate(item) for item in raw or []]
    return sorted(steps, key=lambda s: s.step_number)
