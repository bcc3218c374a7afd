"""Error taxonomy for workflow template and execution services."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status

# purpose: give every rejected workflow operation a stable code and readable reason
# outputs: HTTPException subclasses whose detail is {"code", "message", ...}
# status: active


class WorkflowError(HTTPException):
    """Base class; carries a machine code next to the human-readable message."""

    status_code = status.HTTP_409_CONFLICT
    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, **extra: Any) -> None:
        self.message = message
        self.extra = extra
        detail = {"code": self.code, "message": message, **extra}
        super().__init__(status_code=self.status_code, detail=detail)


class WorkflowNotFound(WorkflowError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class WorkflowStructureError(WorkflowError):
    """A running instance points at graph structure that no longer exists."""

    code = "STRUCTURE_ERROR"


class InvalidGraph(WorkflowError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_GRAPH"


class TemplateInvalid(WorkflowError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "TEMPLATE_INVALID"


class WorkflowStateError(WorkflowError):
    code = "STATE_ERROR"


class TemplateNotActive(WorkflowStateError):
    code = "TEMPLATE_NOT_ACTIVE"


class AlreadyRunning(WorkflowStateError):
    code = "ALREADY_RUNNING"


class InstanceNotActive(WorkflowStateError):
    code = "INSTANCE_NOT_ACTIVE"


class StepNotFound(WorkflowStateError):
    code = "STEP_NOT_FOUND"


class NoMatchingPath(WorkflowStateError):
    code = "NO_MATCHING_PATH"


class DecisionRequired(WorkflowStateError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "DECISION_REQUIRED"


class AlreadyApproved(WorkflowStateError):
    code = "ALREADY_APPROVED"


class IneligibleAssignment(WorkflowStateError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "INELIGIBLE_ASSIGNMENT"


class IneligibleActor(WorkflowStateError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "INELIGIBLE_ACTOR"
