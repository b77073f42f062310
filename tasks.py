"""
Tasks scoped to a project.

A project holds at most MAX_TASKS_PER_PROJECT tasks. Assignees are stored
twice: ``assignedToUsers`` (ordered list) and the legacy single
``assignedTo``, which always mirrors the first element of the list.
Assignment and completion emails are queued in the notification outbox after
the task write succeeds; a queueing failure is logged and never undoes or
fails the write.
"""
import logging
from typing import Any, Dict, List, Optional

from database import DELETE_FIELD, TASKS, TASKS_BY_PROJECT, DocumentStore, Where
from errors import CapacityError, DocumentNotFoundError
from notifications import NotificationOutbox
from querying import query_with_fallback, scan
from schemas import DONE, Task, TaskCreate, TaskUpdate

logger = logging.getLogger(__name__)

MAX_TASKS_PER_PROJECT = 100


def normalize_assignees(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Make ``assignedTo`` and ``assignedToUsers`` agree.

    The list wins when both are given. ``None`` or an empty list clears both.
    """
    if "assignedToUsers" not in fields and "assignedTo" not in fields:
        return fields
    out = dict(fields)
    users = out.get("assignedToUsers")
    if users is None and "assignedToUsers" not in out:
        single = out.get("assignedTo")
        users = [single] if single else []
    users = list(dict.fromkeys(u for u in (users or []) if u))
    if users:
        out["assignedToUsers"] = users
        out["assignedTo"] = users[0]
    else:
        out["assignedToUsers"] = None
        out["assignedTo"] = None
    return out


class TaskService:
    def __init__(
        self,
        store: DocumentStore,
        outbox: Optional[NotificationOutbox] = None,
        max_tasks: int = MAX_TASKS_PER_PROJECT,
    ):
        self._store = store
        self._outbox = outbox
        self._max_tasks = max_tasks

    async def count_for_project(self, project_id: str) -> int:
        return await self._store.count(TASKS, [Where("projectId", "==", project_id)])

    async def create(self, data: TaskCreate) -> str:
        existing = await self.count_for_project(data.project_id)
        if existing >= self._max_tasks:
            raise CapacityError(data.project_id, self._max_tasks)

        doc = normalize_assignees(data.to_document())
        doc = {k: v for k, v in doc.items() if v is not None}
        task_id = await self._store.insert(TASKS, doc)
        logger.info("Task %s created in project %s", task_id, data.project_id)

        for assignee in doc.get("assignedToUsers", []):
            await self._notify(
                "task_assignment",
                data.project_id,
                task_id=task_id,
                recipient_id=assignee,
                actor_id=data.created_by,
            )
        return task_id

    async def get(self, task_id: str) -> Optional[Task]:
        record = await self._store.get(TASKS, task_id)
        return Task.from_record(record) if record else None

    async def list_for_project(self, project_id: str) -> List[Task]:
        records = await query_with_fallback(
            self._store,
            TASKS,
            [Where("projectId", "==", project_id)],
            index=TASKS_BY_PROJECT,
        )
        return [Task.from_record(r) for r in records]

    async def list_for_user(self, uid: str) -> List[Task]:
        # "assignedTo == uid OR uid in assignedToUsers" has no index; always scan
        records = await scan(self._store, TASKS)
        return [
            Task.from_record(r)
            for r in records
            if r.get("assignedTo") == uid or uid in (r.get("assignedToUsers") or [])
        ]

    async def update(self, task_id: str, changes: TaskUpdate, actor_id: Optional[str] = None) -> None:
        before = await self.get(task_id)
        if before is None:
            raise DocumentNotFoundError(TASKS, task_id)

        fields = changes.changes()
        if "title" in fields and not fields["title"]:
            raise ValueError("title cannot be empty")
        if "status" in fields and fields["status"] is None:
            del fields["status"]
        fields = normalize_assignees(fields)
        if not fields:
            return
        partial = {k: (DELETE_FIELD if v is None else v) for k, v in fields.items()}
        await self._store.update(TASKS, task_id, partial)

        if fields.get("status") == DONE and before.status != DONE:
            await self._notify(
                "task_completion",
                before.project_id,
                task_id=task_id,
                actor_id=actor_id or before.created_by,
            )

    async def update_status(self, task_id: str, status: str, actor_id: Optional[str] = None) -> None:
        await self.update(task_id, TaskUpdate(status=status), actor_id=actor_id)

    async def assign(self, task_id: str, uid: str) -> None:
        await self.update(task_id, TaskUpdate(assigned_to_users=[uid]))

    async def delete(self, task_id: str) -> None:
        await self._store.delete(TASKS, task_id)

    async def _notify(self, kind: str, project_id: str, **fields: Any) -> None:
        if self._outbox is None:
            return
        try:
            await self._outbox.enqueue(kind, project_id, **fields)
        except Exception as exc:
            logger.warning("Could not queue %s notification for task %s: %s", kind, fields.get("task_id"), exc)
