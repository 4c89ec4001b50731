from typing import Optional

from fastapi import APIRouter, Depends

from moana.api.common import get_orchestrator, to_http
from moana.errors import MoanaError
from moana.models import TargetType, TaskState
from moana.services.task_orchestrator import TaskOrchestrator

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("")
def list_tasks(
    target_type: Optional[TargetType] = None,
    target_id: Optional[int] = None,
    state: Optional[TaskState] = None,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
):
    tasks = orchestrator.list_tasks(
        target_type=target_type,
        target_id=target_id,
        states=[state] if state is not None else None,
    )
    return [t.to_dict() for t in tasks]


@router.get("/{task_id}")
def get_task(task_id: int, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.get_task(task_id).to_dict()
    except MoanaError as e:
        raise to_http(e)


@router.post("/{task_id}/cancel")
def cancel_task(task_id: int, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.cancel(task_id).to_dict()
    except MoanaError as e:
        raise to_http(e)
