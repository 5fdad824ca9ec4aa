"""
Step Validator

Checks one step's collected data against the catalog's field rules. Pure and
stateless: the same step, data and catalog always produce the same result.
Fields the catalog does not declare are ignored so that older clients keep
working across catalog changes.
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field
import math
import re

from onboarding.steps.catalog import StepCatalog
from onboarding.steps.models import FieldDefinition, StepDefinition

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class StepValidation(BaseModel):
    """Result of validating a step's data"""
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    can_proceed: bool
    suggestions: List[str] = Field(default_factory=list)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def to_number(value: Any) -> Optional[Union[int, float]]:
    """Return value as a finite number, or None when it is not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        # Compared exactly; huge ints do not fit in a float
        return value
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


class StepValidatorTool:
    """Field-rule validation for a single wizard step"""

    def __init__(self, catalog: StepCatalog):
        self.catalog = catalog

    def __call__(self, step_number: int, data: Optional[Dict[str, Any]]) -> StepValidation:
        return self.validate(step_number, data)

    def validate(self, step_number: int, data: Optional[Dict[str, Any]]) -> StepValidation:
        step = self.catalog.get_step(step_number)
        if step is None:
            return StepValidation(
                is_valid=False,
                errors=[f"Invalid step number: {step_number}"],
                can_proceed=False,
            )

        data = data or {}
        errors: List[str] = []
        warnings: List[str] = []
        suggestions: List[str] = []

        # 1. Required fields present
        errors.extend(self._validate_required(step, data))

        # 2. Type and range checks on supplied values
        errors.extend(self._validate_types(step, data))

        # 3. Non-blocking notes
        warnings.extend(self._collect_warnings(step, data))
        suggestions.extend(step.hints if errors else [])

        return StepValidation(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            can_proceed=not errors,
            suggestions=suggestions,
        )

    def _validate_required(self, step: StepDefinition, data: Dict[str, Any]) -> List[str]:
        return [
            f"Field '{f.display_name}' is required"
            for f in step.required_fields
            if is_empty(data.get(f.name))
        ]

    def _validate_types(self, step: StepDefinition, data: Dict[str, Any]) -> List[str]:
        errors: List[str] = []
        for f in step.fields:
            value = data.get(f.name)
            if is_empty(value):
                continue
            if f.type == "email":
                errors.extend(self._validate_email(f, value))
            elif f.type == "number":
                errors.extend(self._validate_number(f, value))
        return errors

    def _validate_email(self, f: FieldDefinition, value: Any) -> List[str]:
        if not isinstance(value, str) or not EMAIL_PATTERN.match(value.strip()):
            return [f"Field '{f.display_name}' must be a valid email"]
        return []

    def _validate_number(self, f: FieldDefinition, value: Any) -> List[str]:
        number = to_number(value)
        if number is None:
            return [f"Field '{f.display_name}' must be a number"]
        errors = []
        if f.min is not None and number < f.min:
            errors.append(f"Field '{f.display_name}' must be at least {_fmt(f.min)}")
        if f.max is not None and number > f.max:
            errors.append(f"Field '{f.display_name}' must be at most {_fmt(f.max)}")
        return errors

    def _collect_warnings(self, step: StepDefinition, data: Dict[str, Any]) -> List[str]:
        return [
            f"Optional field '{f.display_name}' is empty"
            for f in step.fields
            if not f.required and is_empty(data.get(f.name))
        ]


def _fmt(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


def validate_step(step_number: int, data: Optional[Dict[str, Any]], catalog: StepCatalog) -> StepValidation:
    """Validate a step's data against the catalog's field rules."""
    return StepValidatorTool(catalog).validate(step_number, data)


def create_validator(catalog: StepCatalog) -> StepValidatorTool:
    """Factory function to create a validator bound to a catalog"""
    return StepValidatorTool(catalog)
