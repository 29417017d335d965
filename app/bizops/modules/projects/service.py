"""
Projects service layer.
Projects, tasks (with assignees and comments) and project documents kept in storage.
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from werkzeug.utils import secure_filename

from app.bizops.audit import record_event
from app.bizops.errors import ConflictError, ValidationError
from app.bizops.models import User
from app.bizops.storage import Storage
from app.bizops.tenancy import get_scoped_or_404
from app.bizops.utils import clean_str, parse_date, parse_int

from .models import Project, ProjectDocument, Task, TaskComment

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

PROJECT_STATUSES = ("ACTIVE", "ON_HOLD", "COMPLETED", "ARCHIVED")
TASK_STATUSES = ("PENDING", "IN_PROGRESS", "COMPLETED", "CANCELLED")
TASK_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
OPEN_TASK_STATUSES = ("PENDING", "IN_PROGRESS")

MAX_DOCUMENT_BYTES = 25 * 1024 * 1024


def _choice(value: Any, allowed: tuple[str, ...], field: str, default: str) -> str:
    v = (clean_str(value) or default).upper()
    if v not in allowed:
        raise ValidationError(f"Invalid {field}. Must be one of: {', '.join(allowed)}")
    return v


def _dates(start: date | None, end: date | None) -> None:
    if start and end and end < start:
        raise ValidationError("End date must not be before the start date")


# ---------- Projects ----------
def create_project(s: "Session", org_id: int, payload: dict, user: User) -> Project:
    name = clean_str(payload.get("name"))
    if not name:
        raise ValidationError("Project name is required")
    start, end = parse_date(payload.get("start_date")), parse_date(payload.get("end_date"))
    _dates(start, end)
    owner_id = parse_int(payload.get("owner_user_id"), "owner_user_id")
    if owner_id is not None:
        get_scoped_or_404(s, User, owner_id, org_id, label="User")
    now = datetime.utcnow()
    p = Project(
        organization_id=org_id,
        name=name,
        description=clean_str(payload.get("description")),
        status=_choice(payload.get("status"), PROJECT_STATUSES, "status", "ACTIVE"),
        start_date=start,
        end_date=end,
        owner_user_id=owner_id or user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(p)
    s.flush()
    record_event(s, actor=user, action="project.create", entity_type="Project", entity_id=str(p.id), metadata={"name": p.name})
    return p


def update_project(s: "Session", p: Project, payload: dict, user: User) -> Project:
    changes: dict = {}
    if "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            raise ValidationError("Project name is required")
        changes["name"] = {"old": p.name, "new": name}
        p.name = name
    if "description" in payload:
        p.description = clean_str(payload.get("description"))
        changes["description"] = "updated"
    if "status" in payload:
        new_status = _choice(payload.get("status"), PROJECT_STATUSES, "status", p.status)
        changes["status"] = {"old": p.status, "new": new_status}
        p.status = new_status
    if "start_date" in payload:
        p.start_date = parse_date(payload.get("start_date"))
    if "end_date" in payload:
        p.end_date = parse_date(payload.get("end_date"))
    _dates(p.start_date, p.end_date)
    if "owner_user_id" in payload:
        owner_id = parse_int(payload.get("owner_user_id"), "owner_user_id")
        if owner_id is not None:
            get_scoped_or_404(s, User, owner_id, p.organization_id, label="User")
        p.owner_user_id = owner_id
    p.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="project.edit", entity_type="Project", entity_id=str(p.id), metadata={"changes": changes})
    return p


def delete_project(s: "Session", p: Project, user: User) -> None:
    if any(not d.is_deleted for d in p.documents):
        raise ConflictError("Project has documents; delete them first")
    record_event(s, actor=user, action="project.delete", entity_type="Project", entity_id=str(p.id), metadata={"name": p.name})
    s.delete(p)


# ---------- Tasks ----------
def _assignees(s: "Session", org_id: int, raw: Any) -> list[User]:
    if raw in (None, ""):
        return []
    if not isinstance(raw, list):
        raise ValidationError("assignee_ids must be a list")
    users: list[User] = []
    for uid in dict.fromkeys(raw):
        users.append(get_scoped_or_404(s, User, uid, org_id, label="User"))
    return users


def create_task(s: "Session", org_id: int, payload: dict, user: User) -> Task:
    title = clean_str(payload.get("title"))
    if not title:
        raise ValidationError("Task title is required")
    project = None
    if payload.get("project_id") not in (None, ""):
        project = get_scoped_or_404(s, Project, payload.get("project_id"), org_id, label="Project")
    now = datetime.utcnow()
    t = Task(
        organization_id=org_id,
        project_id=project.id if project else None,
        title=title,
        description=clean_str(payload.get("description")),
        status=_choice(payload.get("status"), TASK_STATUSES, "status", "PENDING"),
        priority=_choice(payload.get("priority"), TASK_PRIORITIES, "priority", "MEDIUM"),
        due_date=parse_date(payload.get("due_date")),
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    if t.status == "COMPLETED":
        t.completed_at = now
    t.assignees = _assignees(s, org_id, payload.get("assignee_ids"))
    s.add(t)
    s.flush()
    record_event(
        s,
        actor=user,
        action="task.create",
        entity_type="Task",
        entity_id=str(t.id),
        metadata={"title": t.title, "project_id": t.project_id, "assignees": [u.id for u in t.assignees]},
    )
    return t


def update_task(s: "Session", t: Task, payload: dict, user: User) -> Task:
    changes: dict = {}
    if "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            raise ValidationError("Task title is required")
        changes["title"] = {"old": t.title, "new": title}
        t.title = title
    if "description" in payload:
        t.description = clean_str(payload.get("description"))
    if "priority" in payload:
        t.priority = _choice(payload.get("priority"), TASK_PRIORITIES, "priority", t.priority)
        changes["priority"] = t.priority
    if "due_date" in payload:
        t.due_date = parse_date(payload.get("due_date"))
        changes["due_date"] = str(t.due_date)
    if "project_id" in payload:
        if payload.get("project_id") in (None, ""):
            t.project_id = None
        else:
            t.project_id = get_scoped_or_404(s, Project, payload.get("project_id"), t.organization_id, label="Project").id
    if "assignee_ids" in payload:
        t.assignees = _assignees(s, t.organization_id, payload.get("assignee_ids"))
        changes["assignees"] = [u.id for u in t.assignees]
    if "status" in payload:
        set_task_status(s, t, payload.get("status") or "", user)
    t.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="task.edit", entity_type="Task", entity_id=str(t.id), metadata={"changes": changes})
    return t


def set_task_status(s: "Session", t: Task, new_status: str, user: User) -> Task:
    new_status = _choice(new_status, TASK_STATUSES, "status", "")
    if new_status == t.status:
        return t
    old_status = t.status
    t.status = new_status
    t.completed_at = datetime.utcnow() if new_status == "COMPLETED" else None
    t.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="task.status_change",
        entity_type="Task",
        entity_id=str(t.id),
        metadata={"old_status": old_status, "new_status": new_status},
    )
    return t


def delete_task(s: "Session", t: Task, user: User) -> None:
    record_event(s, actor=user, action="task.delete", entity_type="Task", entity_id=str(t.id), metadata={"title": t.title})
    s.delete(t)


def add_comment(s: "Session", t: Task, body: str | None, user: User) -> TaskComment:
    body = clean_str(body)
    if not body:
        raise ValidationError("Comment is required")
    c = TaskComment(task_id=t.id, user_id=user.id, body=body)
    t.comments.append(c)
    s.flush()
    return c


# ---------- Documents ----------
def document_key(org_id: int, project_id: int, filename: str, today: date | None = None) -> str:
    day = (today or date.today()).isoformat()
    return f"projects/{org_id}/{project_id}/{day}/{filename}"


def upload_document(
    s: "Session",
    storage: Storage,
    project: Project,
    data: bytes,
    filename: str | None,
    content_type: str | None,
    user: User,
) -> ProjectDocument:
    if not data:
        raise ValidationError("File is empty")
    if len(data) > MAX_DOCUMENT_BYTES:
        raise ValidationError("File is too large", details={"max_bytes": MAX_DOCUMENT_BYTES})
    original = (filename or "").strip() or "document"
    safe = secure_filename(original) or "document"
    key = document_key(project.organization_id, project.id, safe)
    if storage.exists(key):
        key = document_key(project.organization_id, project.id, f"{uuid.uuid4().hex[:8]}_{safe}")
    storage.put_bytes(key, data, content_type=content_type)

    doc = ProjectDocument(
        organization_id=project.organization_id,
        project_id=project.id,
        storage_key=key,
        filename=original,
        content_type=content_type,
        sha256=hashlib.sha256(data).hexdigest(),
        size_bytes=len(data),
        uploaded_by_user_id=user.id,
        uploaded_at=datetime.utcnow(),
    )
    s.add(doc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="project_document.upload",
        entity_type="ProjectDocument",
        entity_id=str(doc.id),
        metadata={"project_id": project.id, "storage_key": key, "sha256": doc.sha256, "size": doc.size_bytes},
    )
    return doc


def delete_document(s: "Session", doc: ProjectDocument, user: User) -> ProjectDocument:
    """Soft delete; the stored object is kept."""
    if doc.is_deleted:
        return doc
    doc.is_deleted = True
    doc.deleted_at = datetime.utcnow()
    doc.deleted_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="project_document.delete",
        entity_type="ProjectDocument",
        entity_id=str(doc.id),
        metadata={"project_id": doc.project_id, "storage_key": doc.storage_key},
    )
    return doc
