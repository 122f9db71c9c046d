from yieldsync.core.tasks.lifecycle import ALLOWED_TRANSITIONS, TaskLifecycle

__all__ = ["TaskLifecycle", "ALLOWED_TRANSITIONS"]
