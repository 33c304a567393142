"""
Error taxonomy shared by every engine operation.

All errors derive from ValueError so callers that already translate
ValueError into a client error keep working unchanged.
"""
from __future__ import annotations

from typing import Optional


class SurveyEngineError(ValueError):
    default_code = "error"

    def __init__(self, detail: str, code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.code = code or self.default_code


class ValidationError(SurveyEngineError):
    """Malformed input. Never worth retrying."""
    default_code = "invalid"


class IneligibleError(SurveyEngineError):
    """The survey or actor cannot take a response right now."""
    default_code = "ineligible"

    @property
    def reason(self) -> str:
        return self.detail


class EditingDisabledError(IneligibleError):
    default_code = "editing_disabled"

    def __init__(self, detail: str = "Response editing is not allowed for this survey", code: Optional[str] = None):
        super().__init__(detail, code)


class SurveyLockedError(SurveyEngineError):
    default_code = "survey_active"


class InvalidTransitionError(SurveyEngineError):
    default_code = "invalid_transition"


class NotFoundError(SurveyEngineError):
    default_code = "not_found"


class PersistenceError(SurveyEngineError):
    """The unit of work rolled back; the whole operation may be retried."""
    default_code = "persistence"
