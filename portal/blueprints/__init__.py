"""
Studio Client Portal
Blueprint registry and shared error mapping.

Services raise the exception hierarchy in ``portal.core.exceptions``;
``register_error_handlers`` maps it to the standard JSON error envelope so
routes stay thin.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from portal.core.exceptions import ConflictError, NotFoundError, ValidationError, WorkflowError
from portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def register_error_handlers(bp):
    """Attach the standard domain-exception handlers to a blueprint."""

    @bp.errorhandler(WorkflowError)
    def _handle_workflow_error(error: WorkflowError):
        extra = {"project_id": error.project_id, "error_code": error.code, "path": request.path}
        if error.retryable:
            logger.warning("Retryable workflow failure: %s", error, extra=extra)
            return api_error(error.code, str(error), status=error.status,
                             details={"retryable": True})
        if error.status >= 500:
            # Configuration problems are logged in full but never echoed
            logger.error("Workflow configuration error: %s", error, extra=extra)
            return api_error(error.code, "Phase workflow is misconfigured", status=error.status)
        logger.info("Workflow request rejected: %s", error, extra=extra)
        return api_error(error.code, str(error), status=error.status, details=error.details or None)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), status=422, details=error.details or None)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp


def json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}
