"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Two families live here:

* Generic resource errors (``NotFoundError``, ``ValidationError``,
  ``ConflictError``) shared by every CRUD-style service.
* ``WorkflowError`` and its subclasses, raised by the phase workflow engine.
  Each carries a stable machine-readable ``code`` and an HTTP ``status`` so
  callers can tell "wrong state" (409) from "wrong permission" (403) from
  "broken configuration" (500) from "try again" (503).

Usage:
    from portal.core.exceptions import NotFoundError, AtFinalPhaseError

    raise NotFoundError(resource="Project", resource_id=42)
    raise AtFinalPhaseError(project_id=42)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access attempts,
    so a 404 never confirms that another tenant's record exists.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "Phase").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional - the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Phase workflow errors ────────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for every typed failure of the phase workflow engine."""

    code = "ERR_WORKFLOW"
    status = 400
    retryable = False

    def __init__(self, message: str, *, project_id=None, details: dict | None = None) -> None:
        self.project_id = project_id
        self.details = details or {}
        super().__init__(message)


class AlreadyInitializedError(WorkflowError):
    """Phase tracking already exists for the project."""

    code = "ERR_ALREADY_INITIALIZED"
    status = 409

    def __init__(self, project_id) -> None:
        super().__init__(
            f"Phase tracking already initialized for project {project_id}",
            project_id=project_id,
        )


class TrackingNotFoundError(WorkflowError):
    """The project has no phase tracking record (or is outside the caller's tenant)."""

    code = "ERR_NOT_FOUND"
    status = 404

    def __init__(self, project_id) -> None:
        super().__init__(f"Phase tracking not found for project {project_id}", project_id=project_id)


class AtFinalPhaseError(WorkflowError):
    """The project cannot move forward: it is already at (or has completed) the last phase."""

    code = "ERR_AT_FINAL_PHASE"
    status = 409

    def __init__(self, project_id, message: str | None = None) -> None:
        super().__init__(
            message or "Cannot advance phase - already at final phase",
            project_id=project_id,
        )


class NotCurrentPhaseError(WorkflowError):
    """An approval/rejection referenced a phase other than the project's current one."""

    code = "ERR_NOT_CURRENT_PHASE"
    status = 409

    def __init__(self, project_id, phase_key: str, current_key: str) -> None:
        super().__init__(
            f"Phase '{phase_key}' is not the current phase (current: '{current_key}')",
            project_id=project_id,
            details={"phase_key": phase_key, "current_phase_key": current_key},
        )


class ActionNotFoundError(WorkflowError):
    """The referenced client action does not exist in the catalog."""

    code = "ERR_ACTION_NOT_FOUND"
    status = 404

    def __init__(self, action_id, project_id=None) -> None:
        super().__init__(f"Phase action {action_id} not found", project_id=project_id)
        self.action_id = action_id


class ForbiddenError(WorkflowError):
    """The actor is neither the project owner nor an administrator."""

    code = "ERR_FORBIDDEN"
    status = 403

    def __init__(self, message: str = "Only the project owner or an administrator may do this",
                 *, project_id=None) -> None:
        super().__init__(message, project_id=project_id)


class PhaseNotFoundError(WorkflowError):
    """A phase lookup failed.

    Raised with ``user_supplied=True`` when the key came from the request
    (``jump_to``); otherwise the catalog itself is inconsistent, which is a
    deployment/seed-data bug and is never retried.
    """

    code = "ERR_CONFIGURATION"
    status = 500

    def __init__(self, *, key: str | None = None, order_index: int | None = None,
                 project_id=None, user_supplied: bool = False) -> None:
        ref = f"key={key!r}" if key is not None else f"order_index={order_index}"
        super().__init__(f"Phase {ref} not found in catalog", project_id=project_id)
        self.key = key
        self.order_index = order_index
        self.user_supplied = user_supplied
        if user_supplied:
            self.code = "ERR_PHASE_NOT_FOUND"
            self.status = 404


class CatalogIntegrityError(WorkflowError):
    """The phase/action catalog violates its structural invariants."""

    code = "ERR_CONFIGURATION"
    status = 500


class TransientStoreError(WorkflowError):
    """Lock timeout or lost connection; safe for the caller to retry."""

    code = "ERR_STORE_UNAVAILABLE"
    status = 503
    retryable = True
