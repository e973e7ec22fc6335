"""
Engine-wide exception hierarchy.

Every service raises one of these types; blueprints register handlers
against ``AppraisalError`` once (see ``appraisal.utils.errors``) and get a
consistent ``{"error", "code", "details"}`` body and HTTP status everywhere.

Taxonomy:
    UNAUTHORIZED, NOT_FOUND, INVALID_TRANSITION, INCOMPLETE_EVIDENCE,
    NO_WORKFLOW_CONFIGURED  — caller-fixable (4xx)
    STORE_UNAVAILABLE       — transient infrastructure failure (5xx),
                              the only class a caller may retry

Usage:
    from appraisal.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="Assessment", resource_id=42)
    raise InvalidTransitionError("submit", current_status="released")
"""


class AppraisalError(Exception):
    """Base class. Subclasses set ``code`` and ``http_status``."""

    code = "ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"error": str(self), "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(AppraisalError):
    """Raised when a requested record does not exist.

    Args:
        resource: Human-readable model name (e.g. "Assessment", "DepartmentRole").
        resource_id: The PK that was looked up.
    """

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, {"resource": resource, "resource_id": resource_id})


class UnauthorizedError(AppraisalError):
    """The authenticated actor may not perform this action at this step.

    ``required_role`` and ``step_order`` are included when the failure is a
    workflow role mismatch, so the UI can name who is expected to act.
    """

    code = "UNAUTHORIZED"
    http_status = 403

    def __init__(
        self,
        message: str = "Not permitted",
        *,
        required_role: str | None = None,
        step_order: int | None = None,
    ) -> None:
        details = {}
        if required_role is not None:
            details["required_role"] = required_role
        if step_order is not None:
            details["step_order"] = step_order
        super().__init__(message, details)


class AuthenticationRequired(UnauthorizedError):
    """No authenticated actor on the request."""

    http_status = 401

    def __init__(self) -> None:
        super().__init__("Authentication required")


class InvalidTransitionError(AppraisalError):
    """The assessment is not in a state that allows the requested action."""

    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(
        self,
        action: str,
        current_status: str | None = None,
        reason: str | None = None,
        current_step: int | None = None,
    ) -> None:
        self.action = action
        self.current_status = current_status
        msg = f"Cannot '{action}'"
        if current_status is not None:
            msg += f" from status '{current_status}'"
        if reason:
            msg += f": {reason}"
        details = {"action": action, "current_status": current_status}
        if current_step is not None:
            details["current_step"] = current_step
        super().__init__(msg, details)


class IncompleteEvidenceError(AppraisalError):
    """One or more KPIs in the layer are not complete.

    ``incomplete`` maps KPI id → reason (``unscored``, ``missing_evidence``,
    ``invalid_score``).
    """

    code = "INCOMPLETE_EVIDENCE"
    http_status = 422

    def __init__(self, layer: str, incomplete: dict) -> None:
        self.layer = layer
        self.incomplete = incomplete
        super().__init__(
            f"{len(incomplete)} KPI(s) incomplete in layer '{layer}'",
            {"layer": layer, "incomplete_kpis": incomplete},
        )


class NoWorkflowConfiguredError(AppraisalError):
    """No (or an empty) workflow exists for the subject's department role."""

    code = "NO_WORKFLOW_CONFIGURED"
    http_status = 422

    def __init__(self, department_id: int | None, roles) -> None:
        super().__init__(
            "No approval workflow is configured for this department and role",
            {"department_id": department_id, "roles": sorted(roles)},
        )


class ValidationError(AppraisalError):
    """Input was well-formed JSON but violated a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown (field name → description).
    """

    code = "VALIDATION_ERROR"
    http_status = 400


class ConflictError(AppraisalError):
    """The write would violate a uniqueness or referential constraint."""

    code = "CONFLICT"
    http_status = 409

    def __init__(self, resource: str, field: str | None = None, value=None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        if message is None:
            message = f"{resource} with {field}={value!r} already exists"
        super().__init__(message, {"resource": resource, "field": field})


class StoreUnavailableError(AppraisalError):
    """The relational store could not be reached or timed out."""

    code = "STORE_UNAVAILABLE"
    http_status = 503
    retryable = True

    def __init__(self, message: str = "Store unavailable, retry later") -> None:
        super().__init__(message)
