"""Error taxonomy shared by the registry, planner, orchestrator and agent channel."""


class MoanaError(Exception):
    """Base class for control-plane errors."""
    # Transient errors are retried by the task orchestrator
    transient = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(MoanaError):
    """Raised when a request is malformed or violates a static constraint."""
    pass


class ConflictError(MoanaError):
    """Raised on claim contention or a uniqueness/referential violation."""
    transient = True


class PlanningError(MoanaError):
    """Raised when a brick layout cannot be satisfied by the current nodes."""

    def __init__(self, constraint: str, detail: str = ""):
        self.constraint = constraint
        message = constraint if not detail else f"{constraint}: {detail}"
        super().__init__(message)


class NotFoundError(MoanaError):
    """Raised when an entity id is unknown."""
    pass


class ExternalTimeoutError(MoanaError):
    """Raised when a node agent does not acknowledge within the timeout."""
    transient = True


class LauncherError(MoanaError):
    """Raised when the brick launcher reports a non-zero exit or mount failure."""

    def __init__(self, message: str, exit_code: int = 1):
        self.exit_code = exit_code
        super().__init__(message)


class TaskCancelled(MoanaError):
    """Raised at a step checkpoint when cancellation was requested."""
    pass
