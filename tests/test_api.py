import json
import os
from unittest.mock import MagicMock

import pytest

from greypool.api import create_app
from greypool.config_manager import ConfigManager
from greypool.models import TaskStatus, TaskType
from greypool.service import PoolService
from greypool.service_controller import ServiceController

GB = 1024 ** 3


@pytest.fixture
def service(tmp_path):
    drives = []
    for name in ("disk1", "disk2"):
        path = tmp_path / "drives" / name
        path.mkdir(parents=True)
        drives.append(str(path))
    landing = tmp_path / "landing" / "docs"
    landing.mkdir(parents=True)

    config_file = tmp_path / "greypool.json"
    config_file.write_text(json.dumps({
        "storage_pool_drives": drives,
        "shares": {"docs": {"landing_zone": str(landing), "num_copies": 2}},
        "database_url": f"sqlite:///{tmp_path / 'greypool.db'}",
        "min_free_space_bytes": 0,
    }))

    service = PoolService(
        ConfigManager(str(config_file)),
        probe=lambda path: (100 * GB, 50 * GB),
        notifier=MagicMock(),
        service_controller=ServiceController([]),
    )
    yield service
    service.stop()


@pytest.fixture
def client(service):
    app = create_app(service)
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


def test_create_task(client, service):
    response = client.post("/api/tasks", json={"type": "write", "share": "docs", "path": "a/b.txt"})

    assert response.status_code == 201
    task = response.get_json()["task"]
    assert task["type"] == "write"
    assert task["status"] == "pending"
    assert service.queue.get(task["id"]).path == "a/b.txt"


def test_create_task_rejects_bad_input(client):
    unknown_type = client.post("/api/tasks", json={"type": "copy", "share": "docs", "path": "a"})
    unknown_share = client.post("/api/tasks", json={"type": "write", "share": "music", "path": "a"})
    bad_option = client.post("/api/tasks", json={
        "type": "write", "share": "docs", "path": "a", "options": ["du"]
    })
    missing_path = client.post("/api/tasks", json={"type": "unlink", "share": "docs"})

    for response in (unknown_type, unknown_share, bad_option, missing_path):
        assert response.status_code == 400
        assert response.get_json()["status"] == "error"
    assert "music" in unknown_share.get_json()["message"]


def test_list_and_get_tasks(client, service):
    client.post("/api/tasks", json={"type": "write", "share": "docs", "path": "a"})
    client.post("/api/tasks", json={"type": "unlink", "share": "docs", "path": "b"})

    listed = client.get("/api/tasks?status=pending&limit=10").get_json()["tasks"]
    assert [t["type"] for t in listed] == ["unlink", "write"]

    task_id = listed[1]["id"]
    response = client.get(f"/api/tasks/{task_id}")
    assert response.status_code == 200
    assert response.get_json()["task"]["path"] == "a"

    assert client.get("/api/tasks/9999").status_code == 404
    assert client.get("/api/tasks?status=bogus").status_code == 400


def test_list_drives(client, service):
    response = client.get("/api/drives")

    assert response.status_code == 200
    data = response.get_json()
    assert data["total_drives"] == 2
    assert [d["state"] for d in data["drives"]] == ["active", "active"]
    assert data["drives"][0]["free_bytes"] == 50 * GB


def test_remove_drive(client, service):
    drive = service.config.storage_pool_drives[0]

    response = client.post("/api/drives/remove", json={"drive": drive})

    assert response.status_code == 201
    task = service.queue.get(response.get_json()["task"]["id"])
    assert task.type == TaskType.REMOVE_DRIVE
    assert task.options.encode() == "drive-is-avail"

    gone = client.post("/api/drives/remove", json={"drive": drive, "gone": True})
    assert service.queue.get(gone.get_json()["task"]["id"]).options.encode() == ""


def test_remove_drive_errors(client):
    assert client.post("/api/drives/remove", json={}).status_code == 400
    response = client.post("/api/drives/remove", json={"drive": "/mnt/elsewhere"})
    assert response.status_code == 404


def test_start_fsck(client, service):
    response = client.post("/api/fsck", json={"share": "docs", "options": ["du", "email"]})

    assert response.status_code == 201
    task = service.queue.get(response.get_json()["task"]["id"])
    assert task.type == TaskType.FSCK
    assert task.share == "docs"
    assert task.options.encode() == "du|email"
    assert service.queue.count(TaskStatus.PENDING) == 1

    assert client.post("/api/fsck", json={"options": ["drive-is-avail"]}).status_code == 400
    assert client.post("/api/fsck", json={"share": "music"}).status_code == 400


def test_fsck_report(client, service):
    response = client.get("/api/fsck/last-report")
    assert response.status_code == 200
    assert response.get_json()["report"] is None

    landing = service.pool.shares["docs"].landing_zone
    with open(os.path.join(landing, "f.txt"), "w") as f:
        f.write("hello")
    service.checker.check()

    data = client.get("/api/fsck/last-report").get_json()
    assert data["report"]["files_checked"] == 1
    assert data["report"]["copies_created"] == 2
    assert "No problems found." in data["text"]


def test_cancel_fsck(client, service):
    response = client.post("/api/fsck/cancel")

    assert response.status_code == 200
    assert service.checker.cancelled


def test_request_id_header(client):
    response = client.get("/api/drives", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"
