from fastapi import HTTPException, Request

from moana.errors import ConflictError, MoanaError, NotFoundError, PlanningError, ValidationError
from moana.registry import Registry
from moana.services.task_orchestrator import TaskOrchestrator

# Error class -> HTTP status at the API edge
HTTP_STATUS = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (PlanningError, 400),
    (ValidationError, 400),
)


def http_status_for(error: MoanaError) -> int:
    for error_cls, status in HTTP_STATUS:
        if isinstance(error, error_cls):
            return status
    return 500


def to_http(error: MoanaError) -> HTTPException:
    detail = {"error": error.kind, "message": str(error)}
    if isinstance(error, PlanningError):
        detail["constraint"] = error.constraint
    return HTTPException(status_code=http_status_for(error), detail=detail)


def get_registry(request: Request) -> Registry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> TaskOrchestrator:
    return request.app.state.orchestrator


def task_accepted(task) -> dict:
    return {"task_id": task.id, "operation": task.operation.value, "target_id": task.target_id, "state": task.state.value}
