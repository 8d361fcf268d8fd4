"""taskrelay 异常体系

每个异常携带稳定的 code 与 HTTP status_code，gateway 统一渲染为
{"error": {"code", "message"}}。核心内的错误都是任务级、相互隔离的，
不会导致进程退出。
"""

from .models.enums import TaskStatus, allowed_transitions


class TaskRelayError(Exception):
    """taskrelay 基础异常"""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, recoverable: bool = False) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 调用方重试（重新读取后）是否可能成功
        """
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable


# ---------------------------------------------------------------------------
# ValidationError：同步返回给调用方，从不自动重试，从不部分生效
# ---------------------------------------------------------------------------


class ValidationError(TaskRelayError):
    """请求本身不合法"""

    code = "VALIDATION_ERROR"
    status_code = 400


class IllegalTransitionError(ValidationError):
    """状态流转不在流转表内"""

    code = "ILLEGAL_TRANSITION"
    status_code = 409

    def __init__(self, from_status: TaskStatus, to_status: TaskStatus) -> None:
        allowed = ", ".join(s.value for s in allowed_transitions(from_status)) or "none"
        super().__init__(
            f"Invalid transition {from_status.value} -> {to_status.value}. Allowed: {allowed}"
        )
        self.from_status = from_status
        self.to_status = to_status


class TaskBlockedError(ValidationError):
    """任务存在未完成的依赖"""

    code = "TASK_BLOCKED"
    status_code = 409

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is blocked by unresolved dependencies")
        self.task_id = task_id


class TaskNotEditableError(ValidationError):
    """当前状态不允许直接编辑/删除"""

    code = "TASK_NOT_EDITABLE"
    status_code = 409

    def __init__(self, task_id: str, status: TaskStatus, action: str = "edit") -> None:
        super().__init__(f"Cannot {action} task {task_id} while it is {status.value}")
        self.task_id = task_id
        self.status = status


class TaskHasActiveDependentsError(ValidationError):
    """仍有非终态任务依赖此任务"""

    code = "TASK_HAS_DEPENDENTS"
    status_code = 409

    def __init__(self, task_id: str, dependent_ids: list[str]) -> None:
        super().__init__(
            f"Cannot delete task {task_id} while active tasks depend on it: "
            + ", ".join(dependent_ids)
        )
        self.task_id = task_id
        self.dependent_ids = dependent_ids


class TaskLimitError(ValidationError):
    """超过项目级配额"""

    code = "LIMIT_EXCEEDED"


class GraphError(ValidationError):
    """依赖图错误基类"""

    code = "INVALID_DEPENDENCY"


class SelfReferenceError(GraphError):
    code = "DEPENDENCY_SELF_REFERENCE"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} cannot depend on itself")


class CrossProjectError(GraphError):
    code = "DEPENDENCY_CROSS_PROJECT"

    def __init__(self, task_id: str, other_task_id: str) -> None:
        super().__init__(
            f"Task {other_task_id} must belong to the same project as {task_id}"
        )


class WouldCycleError(GraphError):
    code = "DEPENDENCY_CYCLE"
    status_code = 409

    def __init__(self, task_id: str, depends_on_task_id: str) -> None:
        super().__init__(
            f"Dependency {task_id} -> {depends_on_task_id} would create a cycle"
        )


class DuplicateDependencyError(GraphError):
    code = "DEPENDENCY_EXISTS"
    status_code = 409

    def __init__(self, task_id: str, depends_on_task_id: str) -> None:
        super().__init__(f"Dependency {task_id} -> {depends_on_task_id} already exists")


class DependencyLimitError(GraphError):
    code = "LIMIT_EXCEEDED"

    def __init__(self, task_id: str, limit: int) -> None:
        super().__init__(f"Maximum {limit} dependencies allowed per task ({task_id})")


# ---------------------------------------------------------------------------
# NotFound / Conflict
# ---------------------------------------------------------------------------


class NotFoundError(TaskRelayError):
    code = "NOT_FOUND"
    status_code = 404


class TaskNotFoundError(NotFoundError):
    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id {task_id} does not exist")
        self.task_id = task_id


class ConflictError(TaskRelayError):
    """乐观并发冲突：调用方应重新读取后重试，核心保证未发生部分修改"""

    code = "TASK_CONFLICT"
    status_code = 409

    def __init__(self, task_id: str) -> None:
        super().__init__(
            f"Task {task_id} was modified concurrently; re-read and retry",
            recoverable=True,
        )
        self.task_id = task_id


# ---------------------------------------------------------------------------
# DelegationError：获取或绑定 workspace 失败，任务保持尝试前的状态
# ---------------------------------------------------------------------------


class DelegationError(TaskRelayError):
    code = "DELEGATION_FAILED"
    status_code = 409


class TaskNotDelegableError(DelegationError):
    code = "TASK_NOT_DELEGABLE"

    def __init__(self, task_id: str, status: TaskStatus) -> None:
        super().__init__(
            f"Only ready or queued tasks can be delegated; {task_id} is {status.value}"
        )
        self.status = status


class WorkspaceBusyError(DelegationError):
    code = "WORKSPACE_BUSY"

    def __init__(self, workspace_id: str, active_task_id: str) -> None:
        super().__init__(
            f"Workspace {workspace_id} is already executing task {active_task_id}"
        )
        self.workspace_id = workspace_id
        self.active_task_id = active_task_id
