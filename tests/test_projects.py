import io
from datetime import date

import pytest

from app.bizops.db import session_scope
from app.bizops.modules.projects.models import ProjectDocument
from app.bizops.modules.projects.service import document_key
from app.bizops.storage import LocalStorage, StorageError


def _project(client, name="Warehouse refit", **extra):
    payload = {"name": name, "start_date": "2030-01-01", "end_date": "2030-03-31"}
    payload.update(extra)
    r = client.post("/api/projects", json=payload)
    assert r.status_code == 201, r.json
    return r.json["project"]


def _upload(client, project_id, content=b"%PDF-1.4 plan", filename="Site Plan.pdf"):
    return client.post(
        f"/api/projects/{project_id}/documents",
        data={"file": (io.BytesIO(content), filename)},
        content_type="multipart/form-data",
    )


def test_document_key():
    assert document_key(3, 7, "plan.pdf", today=date(2030, 5, 1)) == "projects/3/7/2030-05-01/plan.pdf"


def test_project_crud(admin_client):
    p = _project(admin_client)
    assert p["status"] == "ACTIVE"
    assert p["owner_name"] == "Ama Admin"

    r = admin_client.patch(f"/api/projects/{p['id']}", json={"status": "on_hold", "name": "Warehouse refit II"})
    assert r.status_code == 200
    assert r.json["project"]["status"] == "ON_HOLD"

    assert admin_client.patch(f"/api/projects/{p['id']}", json={"status": "PAUSED"}).status_code == 400
    r = admin_client.post("/api/projects", json={"name": "Bad dates", "start_date": "2030-02-01", "end_date": "2030-01-01"})
    assert r.status_code == 400
    assert admin_client.post("/api/projects", json={"name": " "}).status_code == 400

    assert [x["name"] for x in admin_client.get("/api/projects?q=refit").json["projects"]] == ["Warehouse refit II"]
    assert admin_client.delete(f"/api/projects/{p['id']}").status_code == 200
    assert admin_client.get(f"/api/projects/{p['id']}").status_code == 404


def test_tasks_assignees_and_status(admin_client):
    me = admin_client.get("/auth/me").json["user"]
    p = _project(admin_client)
    r = admin_client.post(
        "/api/tasks",
        json={"title": "Order shelving", "project_id": p["id"], "priority": "HIGH", "due_date": "2030-01-10", "assignee_ids": [me["id"], me["id"]]},
    )
    assert r.status_code == 201, r.json
    task = r.json["task"]
    assert task["status"] == "PENDING"
    assert task["project_name"] == "Warehouse refit"
    assert [a["email"] for a in task["assignees"]] == ["admin@example.com"]

    admin_client.post("/api/tasks", json={"title": "Unassigned chore"})
    mine = admin_client.get("/api/tasks?mine=1").json["tasks"]
    assert [t["id"] for t in mine] == [task["id"]]
    assert len(admin_client.get(f"/api/tasks?project_id={p['id']}").json["tasks"]) == 1

    r = admin_client.post(f"/api/tasks/{task['id']}/status", json={"status": "COMPLETED"})
    assert r.json["task"]["completed_at"] is not None
    r = admin_client.post(f"/api/tasks/{task['id']}/status", json={"status": "IN_PROGRESS"})
    assert r.json["task"]["completed_at"] is None
    assert admin_client.post(f"/api/tasks/{task['id']}/status", json={"status": "DONE"}).status_code == 400

    detail = admin_client.get(f"/api/projects/{p['id']}").json["project"]
    assert [t["id"] for t in detail["tasks"]] == [task["id"]]


def test_task_validation(admin_client):
    assert admin_client.post("/api/tasks", json={"title": ""}).status_code == 400
    assert admin_client.post("/api/tasks", json={"title": "x", "assignee_ids": 5}).status_code == 400
    assert admin_client.post("/api/tasks", json={"title": "x", "priority": "SOMEDAY"}).status_code == 400
    assert admin_client.post("/api/tasks", json={"title": "x", "assignee_ids": [99999]}).status_code == 404


def test_task_comments(admin_client):
    task = admin_client.post("/api/tasks", json={"title": "Call supplier"}).json["task"]
    r = admin_client.post(f"/api/tasks/{task['id']}/comments", json={"body": "Left a voicemail"})
    assert r.status_code == 201
    assert r.json["comment"]["user_name"] == "Ama Admin"
    assert admin_client.post(f"/api/tasks/{task['id']}/comments", json={"body": "  "}).status_code == 400

    detail = admin_client.get(f"/api/tasks/{task['id']}").json["task"]
    assert [c["body"] for c in detail["comments"]] == ["Left a voicemail"]
    assert admin_client.delete(f"/api/tasks/{task['id']}").status_code == 200
    assert admin_client.get(f"/api/tasks/{task['id']}").status_code == 404


def test_document_upload_download_and_delete(app, admin_client):
    p = _project(admin_client)
    r = _upload(admin_client, p["id"])
    assert r.status_code == 201, r.json
    doc = r.json["document"]
    assert doc["filename"] == "Site Plan.pdf"
    assert doc["size_bytes"] == len(b"%PDF-1.4 plan")

    second = _upload(admin_client, p["id"], content=b"%PDF-1.4 revised").json["document"]
    with session_scope(app) as s:
        first_key = s.get(ProjectDocument, doc["id"]).storage_key
        second_key = s.get(ProjectDocument, second["id"]).storage_key
    assert first_key.endswith("/Site_Plan.pdf")
    assert first_key != second_key

    r = admin_client.get(f"/api/projects/{p['id']}/documents/{doc['id']}/download")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 plan"
    assert "attachment" in r.headers["Content-Disposition"]
    r.close()

    assert admin_client.delete(f"/api/projects/{p['id']}").status_code == 409

    for d in (doc, second):
        assert admin_client.delete(f"/api/projects/{p['id']}/documents/{d['id']}").status_code == 200
    assert admin_client.get(f"/api/projects/{p['id']}/documents").json["documents"] == []
    assert admin_client.get(f"/api/projects/{p['id']}/documents/{doc['id']}/download").status_code == 404
    assert admin_client.delete(f"/api/projects/{p['id']}").status_code == 200


def test_upload_requires_file(admin_client):
    p = _project(admin_client)
    r = admin_client.post(f"/api/projects/{p['id']}/documents", data={}, content_type="multipart/form-data")
    assert r.status_code == 400
    assert _upload(admin_client, p["id"], content=b"").status_code == 400


def test_local_storage_keys(tmp_path):
    storage = LocalStorage(root=tmp_path)
    storage.put_bytes("/projects/1/a.txt", b"hi")
    assert storage.exists("projects/1/a.txt")
    with storage.open("projects/1/a.txt") as f:
        assert f.read() == b"hi"
    with pytest.raises(StorageError):
        storage.put_bytes("projects/../../etc/passwd", b"x")
    with pytest.raises(StorageError):
        storage.open("projects/1/missing.txt")
