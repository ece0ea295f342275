"""Eligibility schemas."""

from datetime import date
from typing import Any

from pydantic import BaseModel, Field, model_validator


class EligibilityRequirements(BaseModel):
    """Clinical prerequisites behind an eligibility verdict."""

    labs_required: bool = False
    labs_completed: bool = False
    visit_required: bool = False
    last_visit_date: date | None = None

    model_config = {"frozen": True}


class EligibilityResult(BaseModel):
    """Verdict on whether a patient may book an appointment type."""

    eligible: bool
    reasons: list[str] = Field(default_factory=list)
    next_eligible_date: date | None = None
    requirements: EligibilityRequirements = Field(default_factory=EligibilityRequirements)

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def normalize_payload(cls, data: Any) -> Any:
        """Fill nulls from the backend and keep reasons only for ineligible verdicts."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("reasons") is None or data.get("eligible"):
            data["reasons"] = []
        if data.get("requirements") is None:
            data.pop("requirements", None)
        return data
