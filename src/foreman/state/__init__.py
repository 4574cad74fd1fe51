from foreman.state.task_log import PersistenceWarning, TaskLog, TaskLogError, TaskLogSnapshot

__all__ = ["PersistenceWarning", "TaskLog", "TaskLogError", "TaskLogSnapshot"]
