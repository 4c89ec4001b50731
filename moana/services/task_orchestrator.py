"""
Task Orchestrator

Runs every cluster-mutating operation as a durable Task made of ordered steps.

Lifecycle of a task:
1. submit() validates the request, dry-runs placement where bricks are placed,
   then creates the task (pending) and claims its target in one transaction
2. A background worker thread runs the steps in order, recording each attempt
3. Transient failures (timeouts, conflicts, database hiccups) are retried with
   exponential backoff up to max_attempts; anything else fails the task
4. The terminal state is written and the target claim released together

At most one active task per target: a second submit for a claimed target is
rejected with ConflictError ("task already active").

Failed tasks are not rolled back; the failing step and reason are recorded on
the task so an operator can resolve it.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Union

from sqlalchemy.exc import OperationalError

from moana.config import Settings
from moana.errors import MoanaError, TaskCancelled, ValidationError
from moana.models import StepState, TaskOperation, TaskState
from moana.registry import ACTIVE_TASK_STATES, Registry, TaskRecord
from moana.services.agent_channel import AgentChannel
from moana.services.operations import OPERATIONS, SKIPPED
from moana.services.topology_planner import TopologyPlanner
from moana.services.volfile_compiler import VolfileCompiler
from moana.services.volfile_store import VolfileStore

logger = logging.getLogger(__name__)


def is_transient(error: Exception) -> bool:
    if isinstance(error, MoanaError):
        return error.transient
    return isinstance(error, OperationalError)


def error_kind(error: Exception) -> str:
    if isinstance(error, MoanaError):
        return error.kind
    return type(error).__name__


class StepContext:
    """What a step sees: the collaborators, the task, and its persisted context."""

    def __init__(self, orchestrator: "TaskOrchestrator", task: TaskRecord):
        self.task = task
        self.request = task.request
        self.data = dict(task.context)
        self.registry = orchestrator.registry
        self.planner = orchestrator.planner
        self.compiler = orchestrator.compiler
        self.store = orchestrator.store
        self.channel = orchestrator.channel
        self.settings = orchestrator.settings

    def save(self):
        self.registry.save_task_context(self.task.id, self.data)


class TaskOrchestrator:
    """
    Submits, runs, cancels and resumes tasks.

    Args:
        registry: shared record store
        channel: node agent channel used by launch/stop/probe steps
        settings: retry policy and artifact directories
        sleep: backoff sleep function (tests pass a no-op)
    """

    def __init__(
        self,
        registry: Registry,
        channel: AgentChannel,
        settings: Optional[Settings] = None,
        planner: Optional[TopologyPlanner] = None,
        compiler: Optional[VolfileCompiler] = None,
        store: Optional[VolfileStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.channel = channel
        self.settings = settings or Settings()
        self.planner = planner or TopologyPlanner(self.settings.brick_base_port, self.settings.brick_max_port)
        self.compiler = compiler or VolfileCompiler()
        self.store = store or VolfileStore(self.settings.volfile_dir, self.settings.launch_config_dir)
        self._sleep = sleep

        self._lock = threading.Lock()
        self._workers: Dict[int, threading.Thread] = {}

        logger.info(
            f"Task orchestrator initialized: max_attempts={self.settings.task_max_attempts}, "
            f"backoff={self.settings.task_retry_backoff_seconds}s"
        )

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    def submit(
        self,
        operation: Union[TaskOperation, str],
        target: int,
        request: Optional[object] = None,
    ) -> TaskRecord:
        """
        Validate and start an operation.

        Args:
            operation: TaskOperation or its value
            target: cluster id for create_volume/add_node, else the volume or node id
            request: typed request (or its dict form) for operations that take one

        Returns:
            The task as created (pending); the worker may already be running it

        Raises:
            ValidationError, PlanningError, NotFoundError: before any task exists
            ConflictError: the target already has an active task
        """
        try:
            operation = TaskOperation(operation)
        except ValueError as e:
            raise ValidationError(f"Unknown operation: {operation!r}") from e

        op = OPERATIONS[operation]
        task = op.prepare(self, target, request, op.step_names)
        logger.info(f"Task {task.id} submitted: {operation.value} on {task.target_type.value} {task.target_id}")
        self._spawn(task.id)
        return task

    def get_task(self, task_id: int) -> TaskRecord:
        return self.registry.get_task(task_id)

    def list_tasks(self, **filters) -> List[TaskRecord]:
        return self.registry.list_tasks(**filters)

    def cancel(self, task_id: int) -> TaskRecord:
        """
        Ask a task to stop at its next step boundary.

        The step in flight finishes (or exhausts its retries) first; the task
        then ends failed with error kind TaskCancelled.
        """
        task = self.registry.request_cancel(task_id)
        if task.active:
            logger.info(f"Task {task_id}: cancellation requested")
        return task

    def wait(self, task_id: int, timeout: Optional[float] = None) -> TaskRecord:
        """Block until the task's worker exits (or timeout passes) and return its record."""
        with self._lock:
            worker = self._workers.get(task_id)
        if worker is not None:
            worker.join(timeout)
        return self.registry.get_task(task_id)

    def resume(self) -> List[int]:
        """
        Restart workers for tasks left pending or running by a previous process.

        Steps already succeeded are not repeated; the first unfinished step
        starts again with its attempt count carried over.
        """
        resumed = []
        for task in self.registry.list_tasks(states=ACTIVE_TASK_STATES):
            with self._lock:
                worker = self._workers.get(task.id)
                if worker is not None and worker.is_alive():
                    continue
            logger.info(f"Resuming task {task.id} ({task.operation.value})")
            self._spawn(task.id)
            resumed.append(task.id)
        return resumed

    def shutdown(self, timeout: float = 5.0):
        with self._lock:
            workers = list(self._workers.values())
        for worker in workers:
            if worker.is_alive():
                worker.join(timeout=timeout)

    # ========================================================================
    # WORKER
    # ========================================================================

    def _spawn(self, task_id: int):
        worker = threading.Thread(target=self._run, args=(task_id,), name=f"moana-task-{task_id}", daemon=True)
        with self._lock:
            self._workers[task_id] = worker
        worker.start()

    def _run(self, task_id: int):
        position = None
        try:
            task = self.registry.start_task(task_id)
            ctx = StepContext(self, task)
            steps = OPERATIONS[task.operation].steps

            for position, (name, fn) in enumerate(steps):
                record = task.steps[position]
                if record.state in (StepState.SUCCEEDED, StepState.SKIPPED):
                    continue

                if self.registry.get_task(task_id).cancel_requested:
                    cancelled = TaskCancelled(f"cancelled before step '{name}'")
                    self.registry.mark_step(task_id, position, StepState.FAILED,
                                            error_kind=cancelled.kind, error_message=str(cancelled))
                    self._finish(task_id, TaskState.FAILED, position, cancelled)
                    return

                if not self._run_step(ctx, position, name, fn, record.attempts):
                    return

            self._finish(task_id, TaskState.SUCCEEDED)
        except Exception as e:
            # Bookkeeping itself failed; still record the outcome and release the claim
            logger.error(f"Task {task_id}: worker crashed: {e}", exc_info=True)
            self._finish(task_id, TaskState.FAILED, position, e)
        finally:
            with self._lock:
                if self._workers.get(task_id) is threading.current_thread():
                    del self._workers[task_id]

    def _run_step(self, ctx: StepContext, position: int, name: str, fn, prior_attempts: int) -> bool:
        task_id = ctx.task.id
        max_attempts = self.settings.task_max_attempts
        attempts = prior_attempts

        while True:
            attempts += 1
            self.registry.mark_step(task_id, position, StepState.RUNNING, attempts=attempts)
            try:
                result = fn(ctx)
            except Exception as e:
                kind = error_kind(e)
                if is_transient(e) and attempts < max_attempts:
                    delay = self.settings.task_retry_backoff_seconds * (2 ** (attempts - 1))
                    logger.warning(
                        f"Task {task_id} step '{name}' attempt {attempts}/{max_attempts} failed "
                        f"({kind}: {e}); retrying in {delay:.2f}s"
                    )
                    self._sleep(delay)
                    continue

                logger.error(f"Task {task_id} step '{name}' failed after {attempts} attempt(s): {kind}: {e}")
                self.registry.mark_step(task_id, position, StepState.FAILED,
                                        error_kind=kind, error_message=str(e))
                self._finish(task_id, TaskState.FAILED, position, e)
                return False

            state = StepState.SKIPPED if result is SKIPPED else StepState.SUCCEEDED
            self.registry.mark_step(task_id, position, state)
            logger.debug(f"Task {task_id} step '{name}' {state.value}")
            return True

    def _finish(self, task_id: int, state: TaskState, position: Optional[int] = None, error: Optional[Exception] = None):
        if error is None:
            self.registry.complete_task(task_id, state)
        else:
            self.registry.complete_task(
                task_id,
                state,
                error_step=position,
                error_kind=error_kind(error),
                error_message=str(error),
            )
