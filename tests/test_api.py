import io
import zipfile

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from api.dependencies import get_job_queue, get_services

from conftest import numbered_lines

GUIDE = b"WALKTHROUGH\n===========\n\n" + numbered_lines(500)


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{tmp_path / 'db' / 'api.db'}")
    monkeypatch.setenv("GUIDE_STORAGE_ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("POSITION_SETTLE_SECONDS", "0")
    monkeypatch.delenv("REDIS_URL", raising=False)
    get_services.cache_clear()
    get_job_queue.cache_clear()
    with TestClient(create_app()) as test_client:
        yield test_client
    get_services.cache_clear()
    get_job_queue.cache_clear()


def _upload(client, data=GUIDE, title="Mega Man FAQ", system="NES"):
    response = client.post(
        "/guides/upload",
        files={"file": ("guide.txt", data, "text/plain")},
        data={"title": title, "system": system, "version_label": "1.0"},
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_upload_and_read(client):
    created = _upload(client)
    guide_id = created["guide_id"]

    guide = client.get(f"/guides/{guide_id}").json()
    assert guide["status"] == "ready"
    assert guide["line_count"] == 503
    assert guide["current_version"] == 1
    assert [g["id"] for g in client.get("/guides").json()] == [guide_id]

    job = client.get(f"/jobs/{created['job_id']}").json()
    assert (job["state"], job["phase"], job["version"]) == ("completed", "finalize", 1)

    window = client.get(f"/guides/{guide_id}/window", params={"center": 250, "radius": 2}).json()
    assert (window["start"], window["end"]) == (248, 253)
    assert window["lines"] == [f"line {i:06d}" for i in range(245, 250)]

    lines = client.get(f"/guides/{guide_id}/lines", params={"start": 0, "end": 2}).json()
    assert lines["lines"] == ["WALKTHROUGH", "==========="]

    sections = client.get(f"/guides/{guide_id}/sections").json()["sections"]
    assert [(s["line_number"], s["title"]) for s in sections] == [(0, "WALKTHROUGH")]

    versions = client.get(f"/guides/{guide_id}/versions").json()
    assert [v["version"] for v in versions] == [1]


def test_duplicate_upload_conflicts(client):
    _upload(client)
    response = client.post(
        "/guides/upload",
        files={"file": ("guide.txt", GUIDE, "text/plain")},
        data={"title": "Mega Man FAQ", "system": "NES"},
    )
    assert response.status_code == 409


def test_empty_upload_rejected(client):
    response = client.post(
        "/guides/upload",
        files={"file": ("guide.txt", b"", "text/plain")},
        data={"title": "Empty"},
    )
    assert response.status_code == 400


def test_failed_import_is_reported(client):
    created = _upload(client, data=b"fine\n\xff\n", title="Broken")
    guide_id = created["guide_id"]

    assert client.get(f"/guides/{guide_id}").json()["status"] == "failed"
    job = client.get(f"/jobs/{created['job_id']}").json()
    assert job["state"] == "failed"
    assert "byte 5" in job["error_message"]

    response = client.get(f"/guides/{guide_id}/window", params={"center": 0})
    assert response.status_code == 409
    assert response.json()["error"] == "GuideNotReadyError"


def test_reimport_creates_new_version(client):
    guide_id = _upload(client)["guide_id"]
    response = client.post(
        f"/guides/{guide_id}/reimport",
        files={"file": ("guide.txt", numbered_lines(50), "text/plain")},
        data={"version_label": "2.0"},
    )
    assert response.status_code == 200

    guide = client.get(f"/guides/{guide_id}").json()
    assert (guide["current_version"], guide["line_count"], guide["version_label"]) == (2, 50, "2.0")


def test_error_statuses(client):
    guide_id = _upload(client)["guide_id"]

    assert client.get("/guides/missing").status_code == 404
    assert client.get("/jobs/job-missing").status_code == 404
    out_of_range = client.get(f"/guides/{guide_id}/lines", params={"start": 500, "end": 600})
    assert out_of_range.status_code == 416
    assert out_of_range.json()["context"]["line_count"] == 503
    bad_label = client.post(f"/guides/{guide_id}/bookmarks", data={"line": 1, "label": " "})
    assert bad_label.status_code == 422


def test_position_round_trip(client):
    guide_id = _upload(client)["guide_id"]
    assert client.get(f"/guides/{guide_id}/position").json()["line"] == 0

    saved = client.put(f"/guides/{guide_id}/position", data={"line": 9999, "column": 3}).json()
    assert saved["line"] == 502

    client.put(f"/guides/{guide_id}/position", data={"line": 120, "column": 4})
    assert client.post("/guides/suspend").json() == {"flushed": 0}
    position = client.get(f"/guides/{guide_id}/position").json()
    assert (position["line"], position["column"]) == (120, 4)


def test_bookmarks(client):
    guide_id = _upload(client)["guide_id"]
    created = client.post(
        f"/guides/{guide_id}/bookmarks", data={"line": 300, "label": "Boss", "category": "bosses"}
    ).json()
    client.post(f"/guides/{guide_id}/bookmarks", data={"line": 10, "label": "Start"})

    listed = client.get(f"/guides/{guide_id}/bookmarks").json()
    assert [b["label"] for b in listed] == ["Start", "Boss"]
    assert [b["label"] for b in client.get(f"/guides/{guide_id}/bookmarks", params={"category": "bosses"}).json()] == [
        "Boss"
    ]

    resolved = client.get(f"/bookmarks/{created['id']}/resolve").json()
    assert (resolved["line"], resolved["stale"]) == (300, False)

    past_end = client.post(f"/guides/{guide_id}/bookmarks", data={"line": 503, "label": "Nope"})
    assert past_end.status_code == 416

    assert client.delete(f"/bookmarks/{created['id']}").status_code == 200
    assert client.get(f"/bookmarks/{created['id']}").status_code == 404


def test_collections(client):
    guide_id = _upload(client)["guide_id"]
    games = client.post("/collections", data={"name": "Games"}).json()
    nes = client.post("/collections", data={"name": "NES", "parent_id": games["id"]}).json()

    entry = client.post(
        f"/collections/{nes['id']}/entries", data={"kind": "guide", "target": guide_id}
    ).json()
    link = client.post(
        f"/collections/{nes['id']}/entries",
        data={"kind": "web_link", "target": "https://example.com/map", "index": 0},
    ).json()

    detail = client.get(f"/collections/{nes['id']}").json()
    assert detail["path"] == ["Games", "NES"]
    assert [e["id"] for e in detail["entries"]] == [link["id"], entry["id"]]

    reordered = client.put(f"/collections/{nes['id']}/entries/{link['id']}/index", data={"index": 1}).json()
    assert [e["id"] for e in reordered] == [entry["id"], link["id"]]

    assert [c["id"] for c in client.get("/collections", params={"guide_id": guide_id}).json()] == [nes["id"]]
    assert [c["id"] for c in client.get("/collections").json()] == [games["id"]]

    cycle = client.put(f"/collections/{games['id']}/parent", data={"parent_id": nes["id"]})
    assert cycle.status_code == 422
    bad_link = client.post(f"/collections/{nes['id']}/entries", data={"kind": "web_link", "target": "nowhere"})
    assert bad_link.status_code == 422

    renamed = client.put(f"/collections/{games['id']}/name", data={"name": "Retro"}).json()
    assert renamed["name"] == "Retro"
    assert client.delete(f"/collections/{games['id']}").json()["removed"] == 2
    assert client.get(f"/collections/{nes['id']}").status_code == 404


def test_export_and_import_bundle(client):
    guide_id = _upload(client)["guide_id"]
    client.post(f"/guides/{guide_id}/bookmarks", data={"line": 42, "label": "Answer"})

    exported = client.get(f"/guides/{guide_id}/export")
    assert exported.status_code == 200
    with zipfile.ZipFile(io.BytesIO(exported.content)) as archive:
        assert archive.read("content.txt") == GUIDE

    imported = client.post(
        "/guides/import-bundle",
        files={"file": ("bundle.zip", exported.content, "application/zip")},
        data={"guide_id": "copy"},
    ).json()
    assert imported["id"] == "copy"
    assert imported["line_count"] == 503
    assert [b["label"] for b in client.get("/guides/copy/bookmarks").json()] == ["Answer"]


def test_delete_guide(client):
    guide_id = _upload(client)["guide_id"]
    client.get(f"/guides/{guide_id}/window", params={"center": 10})
    assert client.delete(f"/guides/{guide_id}").json()["status"] == "deleted"
    assert client.get(f"/guides/{guide_id}").status_code == 404
    assert client.get("/guides").json() == []
