from __future__ import annotations

from flask import Blueprint, current_app, g, request, send_file

from app.bizops.db import db_session
from app.bizops.errors import NotFoundError, ValidationError
from app.bizops.models import User
from app.bizops.rbac import require_permission
from app.bizops.storage import StorageError, storage_from_config
from app.bizops.tenancy import current_org_id, get_scoped_or_404, scoped_query
from app.bizops.utils import page_params, paginate, parse_bool, parse_int, request_payload

from .models import Project, ProjectDocument, Task, TaskAssignee
from .service import (
    add_comment,
    create_project,
    create_task,
    delete_document,
    delete_project,
    delete_task,
    set_task_status,
    update_project,
    update_task,
    upload_document,
)

bp = Blueprint("projects", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def project_to_dict(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "status": p.status,
        "start_date": p.start_date,
        "end_date": p.end_date,
        "owner_user_id": p.owner_user_id,
        "owner_name": p.owner.display_name if p.owner else None,
        "created_at": p.created_at,
        "updated_at": p.updated_at,
    }


def task_to_dict(t: Task, *, with_comments: bool = False) -> dict:
    d = {
        "id": t.id,
        "project_id": t.project_id,
        "project_name": t.project.name if t.project else None,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "due_date": t.due_date,
        "completed_at": t.completed_at,
        "created_by_user_id": t.created_by_user_id,
        "assignees": [{"id": u.id, "name": u.display_name, "email": u.email} for u in t.assignees],
        "created_at": t.created_at,
        "updated_at": t.updated_at,
    }
    if with_comments:
        d["comments"] = [comment_to_dict(c) for c in t.comments]
    return d


def comment_to_dict(c) -> dict:
    return {
        "id": c.id,
        "user_id": c.user_id,
        "user_name": c.user.display_name if c.user else None,
        "body": c.body,
        "created_at": c.created_at,
    }


def document_to_dict(d: ProjectDocument) -> dict:
    return {
        "id": d.id,
        "project_id": d.project_id,
        "filename": d.filename,
        "content_type": d.content_type,
        "sha256": d.sha256,
        "size_bytes": d.size_bytes,
        "uploaded_by_user_id": d.uploaded_by_user_id,
        "uploaded_at": d.uploaded_at,
    }


# ---------- Projects ----------
@bp.get("/projects")
@require_permission("projects.view")
def projects_list():
    s = db_session()
    q = scoped_query(s, Project)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Project.status == status)
    search = (request.args.get("q") or "").strip()
    if search:
        q = q.filter(Project.name.ilike(f"%{search}%"))
    page, per_page = page_params(request.args)
    projects, meta = paginate(q.order_by(Project.created_at.desc(), Project.id.desc()), page, per_page)
    return {"projects": [project_to_dict(p) for p in projects], "pagination": meta}


@bp.post("/projects")
@require_permission("projects.edit")
def projects_create():
    s = db_session()
    p = create_project(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"project": project_to_dict(p)}, 201


@bp.get("/projects/<int:project_id>")
@require_permission("projects.view")
def project_detail(project_id: int):
    s = db_session()
    p = get_scoped_or_404(s, Project, project_id, label="Project")
    tasks = s.query(Task).filter(Task.project_id == p.id).order_by(Task.due_date.asc(), Task.id.asc()).all()
    d = project_to_dict(p)
    d["tasks"] = [task_to_dict(t) for t in tasks]
    d["documents"] = [document_to_dict(doc) for doc in p.documents if not doc.is_deleted]
    return {"project": d}


@bp.patch("/projects/<int:project_id>")
@require_permission("projects.edit")
def project_update(project_id: int):
    s = db_session()
    p = get_scoped_or_404(s, Project, project_id, label="Project")
    update_project(s, p, request_payload(), _current_user())
    s.commit()
    return {"project": project_to_dict(p)}


@bp.delete("/projects/<int:project_id>")
@require_permission("projects.edit")
def project_delete(project_id: int):
    s = db_session()
    p = get_scoped_or_404(s, Project, project_id, label="Project")
    delete_project(s, p, _current_user())
    s.commit()
    return {"ok": True}


# ---------- Tasks ----------
@bp.get("/tasks")
@require_permission("projects.view")
def tasks_list():
    s = db_session()
    q = scoped_query(s, Task)
    project_id = parse_int(request.args.get("project_id"), "project_id")
    if project_id:
        q = q.filter(Task.project_id == project_id)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Task.status.in_([p.strip() for p in status.split(",") if p.strip()]))
    priority = (request.args.get("priority") or "").strip().upper()
    if priority:
        q = q.filter(Task.priority == priority)
    assignee_id = parse_int(request.args.get("assignee_id"), "assignee_id")
    if parse_bool(request.args.get("mine")):
        assignee_id = _current_user().id
    if assignee_id:
        q = q.filter(Task.id.in_(s.query(TaskAssignee.task_id).filter(TaskAssignee.user_id == assignee_id)))
    page, per_page = page_params(request.args)
    tasks, meta = paginate(q.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.id.asc()), page, per_page)
    return {"tasks": [task_to_dict(t) for t in tasks], "pagination": meta}


@bp.post("/tasks")
@require_permission("projects.edit")
def tasks_create():
    s = db_session()
    t = create_task(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"task": task_to_dict(t)}, 201


@bp.get("/tasks/<int:task_id>")
@require_permission("projects.view")
def task_detail(task_id: int):
    s = db_session()
    t = get_scoped_or_404(s, Task, task_id, label="Task")
    return {"task": task_to_dict(t, with_comments=True)}


@bp.patch("/tasks/<int:task_id>")
@require_permission("projects.edit")
def task_update(task_id: int):
    s = db_session()
    t = get_scoped_or_404(s, Task, task_id, label="Task")
    update_task(s, t, request_payload(), _current_user())
    s.commit()
    return {"task": task_to_dict(t)}


@bp.delete("/tasks/<int:task_id>")
@require_permission("projects.edit")
def task_delete(task_id: int):
    s = db_session()
    t = get_scoped_or_404(s, Task, task_id, label="Task")
    delete_task(s, t, _current_user())
    s.commit()
    return {"ok": True}


@bp.post("/tasks/<int:task_id>/status")
@require_permission("projects.edit")
def task_status(task_id: int):
    s = db_session()
    t = get_scoped_or_404(s, Task, task_id, label="Task")
    set_task_status(s, t, request_payload().get("status") or "", _current_user())
    s.commit()
    return {"task": task_to_dict(t)}


@bp.get("/tasks/<int:task_id>/comments")
@require_permission("projects.view")
def task_comments(task_id: int):
    s = db_session()
    t = get_scoped_or_404(s, Task, task_id, label="Task")
    return {"comments": [comment_to_dict(c) for c in t.comments]}


@bp.post("/tasks/<int:task_id>/comments")
@require_permission("projects.view")
def task_comment_create(task_id: int):
    s = db_session()
    t = get_scoped_or_404(s, Task, task_id, label="Task")
    c = add_comment(s, t, request_payload().get("body"), _current_user())
    s.commit()
    return {"comment": comment_to_dict(c)}, 201


# ---------- Documents ----------
def _document(s, project: Project, document_id: int) -> ProjectDocument:
    doc = s.get(ProjectDocument, document_id)
    if not doc or doc.project_id != project.id or doc.is_deleted:
        raise NotFoundError("Document not found")
    return doc


@bp.get("/projects/<int:project_id>/documents")
@require_permission("projects.view")
def documents_list(project_id: int):
    s = db_session()
    p = get_scoped_or_404(s, Project, project_id, label="Project")
    return {"documents": [document_to_dict(d) for d in p.documents if not d.is_deleted]}


@bp.post("/projects/<int:project_id>/documents")
@require_permission("projects.edit")
def document_upload(project_id: int):
    s = db_session()
    p = get_scoped_or_404(s, Project, project_id, label="Project")
    f = request.files.get("file")
    if f is None:
        raise ValidationError("A file is required")
    doc = upload_document(
        s,
        storage_from_config(current_app.config),
        p,
        f.read(),
        f.filename,
        f.mimetype or "application/octet-stream",
        _current_user(),
    )
    s.commit()
    return {"document": document_to_dict(doc)}, 201


@bp.get("/projects/<int:project_id>/documents/<int:document_id>/download")
@require_permission("projects.view")
def document_download(project_id: int, document_id: int):
    s = db_session()
    p = get_scoped_or_404(s, Project, project_id, label="Project")
    doc = _document(s, p, document_id)
    try:
        fobj = storage_from_config(current_app.config).open(doc.storage_key)
    except StorageError as e:
        raise NotFoundError("Document file is missing") from e
    return send_file(
        fobj,
        mimetype=doc.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=doc.filename,
        max_age=0,
    )


@bp.delete("/projects/<int:project_id>/documents/<int:document_id>")
@require_permission("projects.edit")
def document_delete(project_id: int, document_id: int):
    s = db_session()
    p = get_scoped_or_404(s, Project, project_id, label="Project")
    doc = _document(s, p, document_id)
    delete_document(s, doc, _current_user())
    s.commit()
    return {"ok": True}
