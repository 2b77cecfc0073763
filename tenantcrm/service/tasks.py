from __future__ import annotations

from typing import Any, Dict, List, Optional

from tenantcrm.service.audit import AuditService
from tenantcrm.service.errors import NotFoundError
from tenantcrm.service.sessions import RequestContext
from tenantcrm.storage.models import Task


class TaskService:
    """Minimal tenant-scoped task records.

    Authorization is decided by the request pipeline before these methods
    run; every store call still carries the resolved tenant id.
    """

    def __init__(self, store: Any, audit: AuditService) -> None:
        self.store = store
        self.audit = audit

    def owner_lookup(self, tenant_id: str, task_id: str):
        return lambda: self.store.get_task_owner_id(tenant_id, task_id)

    def list_tasks(self, ctx: RequestContext) -> List[Task]:
        if ctx.principal.has("tasks:read:all"):
            return self.store.list_tasks(ctx.tenant_id)
        return self.store.list_tasks(ctx.tenant_id, assigned_to=ctx.user_id)

    def create_task(
        self,
        ctx: RequestContext,
        *,
        title: str,
        description: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> Task:
        task = self.store.create_task(
            ctx.tenant_id,
            title=title,
            description=description,
            created_by=ctx.user_id,
            assigned_to=assigned_to or ctx.user_id,
        )
        self.audit.record_nowait(
            "tasks.created",
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            resource_type="task",
            resource_id=task.id,
        )
        return task

    def update_task(self, ctx: RequestContext, task_id: str, fields: Dict[str, Any]) -> Task:
        task = self.store.update_task(ctx.tenant_id, task_id, fields)
        if task is None:
            raise NotFoundError("Task not found")
        self.audit.record_nowait(
            "tasks.updated",
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            resource_type="task",
            resource_id=task_id,
            details={"fields": sorted(fields)},
        )
        return task

    def delete_task(self, ctx: RequestContext, task_id: str) -> None:
        if not self.store.delete_task(ctx.tenant_id, task_id):
            raise NotFoundError("Task not found")
        self.audit.record_nowait(
            "tasks.deleted",
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            resource_type="task",
            resource_id=task_id,
        )
