"""Static onboarding step table.

Used directly by the static catalog and as the final fallback of the edge
catalog. Step numbers are contiguous from 1.
"""

from typing import List

from onboarding.steps.models import StepDefinition, parse_steps


def _options(*pairs):
    return [{"value": v, "label": l} for v, l in pairs]


ONBOARDING_STEPS_RAW = [
    {
        "step_number": 1,
        "step_name": "welcome",
        "title": "Welcome",
        "description": "Tell us about yourself and your experience with OKRs.",
        "fields": [
            {"name": "full_name", "type": "text", "label": "Full name", "required": True},
            {"name": "job_title", "type": "text", "label": "Job title", "required": True},
            {
                "name": "experience_with_okr",
                "type": "select",
                "label": "Experience with OKRs",
                "required": True,
                "options": _options(
                    ("none", "Never used OKRs"),
                    ("basic", "Basic knowledge"),
                    ("intermediate", "Intermediate"),
                    ("advanced", "Expert"),
                ),
            },
            {"name": "primary_goal", "type": "textarea", "label": "Primary goal", "required": True},
            {
                "name": "urgency_level",
                "type": "select",
                "label": "Urgency",
                "required": True,
                "options": _options(("low", "Low"), ("medium", "Medium"), ("high", "High")),
            },
        ],
        "hints": [
            "Your answers help us tailor the rest of the setup",
            "There are no wrong answers about your experience level",
        ],
        "estimated_time_minutes": 3,
    },
    {
        "step_number": 2,
        "step_name": "company",
        "title": "Your company",
        "description": "Help us understand your business context.",
        "fields": [
            {"name": "company_name", "type": "text", "label": "Company name", "required": True},
            {"name": "industry_id", "type": "select", "label": "Industry", "required": False},
            {
                "name": "company_size",
                "type": "select",
                "label": "Company size",
                "required": True,
                "options": _options(
                    ("startup", "Startup (1-10)"),
                    ("pyme", "SMB (11-50)"),
                    ("empresa", "Company (51-250)"),
                    ("corporacion", "Enterprise (250+)"),
                ),
            },
            {"name": "description", "type": "textarea", "label": "Company description", "required": True},
            {"name": "website", "type": "text", "label": "Website", "required": False},
            {"name": "country", "type": "text", "label": "Country", "required": True},
            {
                "name": "employee_count",
                "type": "number",
                "label": "Number of employees",
                "required": False,
                "min": 1,
                "max": 100000,
            },
        ],
        "hints": ["Industry and size shape the OKRs we suggest"],
        "estimated_time_minutes": 4,
    },
    {
        "step_number": 3,
        "step_name": "organization",
        "title": "Organization structure",
        "description": "How your organization is structured.",
        "fields": [
            {"name": "department", "type": "text", "label": "Department", "required": False},
            {
                "name": "team_size",
                "type": "number",
                "label": "Direct team size",
                "required": False,
                "min": 0,
                "max": 500,
            },
            {
                "name": "okr_maturity",
                "type": "select",
                "label": "OKR maturity",
                "required": True,
                "options": _options(
                    ("beginner", "Beginner"),
                    ("intermediate", "Intermediate"),
                    ("advanced", "Advanced"),
                ),
            },
            {"name": "current_challenges", "type": "multiselect", "label": "Current challenges", "required": True},
            {"name": "business_goals", "type": "multiselect", "label": "Business goals", "required": True},
        ],
        "hints": ["Challenges and goals drive the initial dashboard"],
        "estimated_time_minutes": 5,
    },
    {
        "step_number": 4,
        "step_name": "preferences",
        "title": "Preferences",
        "description": "Personalize how the product works for you.",
        "fields": [
            {
                "name": "communication_style",
                "type": "select",
                "label": "Communication style",
                "required": True,
                "options": _options(("formal", "Formal"), ("informal", "Informal")),
            },
            {
                "name": "language",
                "type": "select",
                "label": "Language",
                "required": True,
                "options": _options(("es", "Español"), ("en", "English")),
            },
            {
                "name": "notification_frequency",
                "type": "select",
                "label": "Notification frequency",
                "required": True,
                "options": _options(("daily", "Daily"), ("weekly", "Weekly"), ("monthly", "Monthly")),
            },
            {"name": "focus_areas", "type": "multiselect", "label": "Focus areas", "required": True},
            {
                "name": "ai_assistance_level",
                "type": "select",
                "label": "AI assistance level",
                "required": True,
                "options": _options(
                    ("minimal", "Minimal"),
                    ("moderate", "Moderate"),
                    ("extensive", "Extensive"),
                ),
            },
        ],
        "estimated_time_minutes": 3,
    },
    {
        "step_number": 5,
        "step_name": "review",
        "title": "Review and confirm",
        "description": "Review your answers to finish the initial setup.",
        "fields": [
            {
                "name": "confirmed",
                "type": "select",
                "label": "Is the information correct?",
                "required": True,
                "options": _options(("true", "Yes"), ("false", "No, I want to make changes")),
            },
            {"name": "additional_notes", "type": "textarea", "label": "Additional notes", "required": False},
            {"name": "setup_demo", "type": "select", "label": "Schedule a demo", "required": False},
            {"name": "invite_team_members", "type": "select", "label": "Invite team members", "required": False},
        ],
        "estimated_time_minutes": 2,
    },
]


def default_steps() -> List[StepDefinition]:
    return parse_steps(ONBOARDING_STEPS_RAW)
