from .client import TaskStoreClient, TaskStoreError

__all__ = ["TaskStoreClient", "TaskStoreError"]
