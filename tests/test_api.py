from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from layout_uploader import main as app_main
from layout_uploader.errors import RunInProgressError
from layout_uploader.schemas import ProgressUpdate, RunConfig

VALID_CONFIG = {
    "image_path": "/data/plan.png",
    "server_address": "https://layouts.example.com/",
    "layout_key": "plant-7",
    "secret": "s3cret",
    "background_color": [255, 255, 255],
    "tile_size": 256,
}


class StubRunManager:
    def __init__(self, *, busy: bool = False, progress: ProgressUpdate | None = None, active: bool = True) -> None:
        self.busy = busy
        self.progress = progress
        self.active = active
        self.started: list[RunConfig] = []
        self.cancel_calls = 0

    async def start_run(self, config: RunConfig) -> dict[str, Any]:
        if self.busy:
            raise RunInProgressError("A run is already in progress; cancel it or wait for it to finish")
        self.started.append(config)
        return {"run_id": "run-1", "status": "RUNNING", "layout_key": config.layout_key, "tiles_uploaded": 0}

    def current(self) -> dict[str, Any]:
        return {
            "run_id": "run-1",
            "status": "RUNNING",
            "layout_key": "plant-7",
            "layout_path": "path-1",
            "tiles_uploaded": 2,
            "progress": self.progress.model_dump() if self.progress else None,
        }

    def get_progress(self) -> ProgressUpdate | None:
        return self.progress

    def cancel(self) -> bool:
        self.cancel_calls += 1
        return self.active


def get_client(monkeypatch, stub: StubRunManager) -> TestClient:
    monkeypatch.setattr(app_main, "RUN_MANAGER", stub)
    return TestClient(app_main.app)


def test_health(monkeypatch) -> None:
    client = get_client(monkeypatch, StubRunManager())

    assert client.get("/health").json() == {"status": "ok"}


def test_start_run_accepts_valid_config(monkeypatch) -> None:
    stub = StubRunManager()
    client = get_client(monkeypatch, stub)

    response = client.post("/runs", json=VALID_CONFIG)

    assert response.status_code == 202
    assert response.json()["run_id"] == "run-1"
    assert stub.started[0].server_address == "https://layouts.example.com"
    assert stub.started[0].background_color == (255, 255, 255)


def test_start_run_conflict_when_busy(monkeypatch) -> None:
    client = get_client(monkeypatch, StubRunManager(busy=True))

    response = client.post("/runs", json=VALID_CONFIG)

    assert response.status_code == 409
    assert "already in progress" in response.json()["detail"]


@pytest.mark.parametrize(
    "override",
    [
        {"tile_size": 0},
        {"background_color": [0, 256, 0]},
        {"background_color": [0, -1, 0]},
        {"server_address": "   "},
        {"server_address": "ftp://layouts.example.com"},
        {"layout_key": ""},
    ],
)
def test_start_run_rejects_invalid_config(monkeypatch, override: dict[str, Any]) -> None:
    stub = StubRunManager()
    client = get_client(monkeypatch, stub)

    response = client.post("/runs", json={**VALID_CONFIG, **override})

    assert response.status_code == 422
    assert stub.started == []


def test_progress_returns_null_before_first_run(monkeypatch) -> None:
    client = get_client(monkeypatch, StubRunManager())

    response = client.get("/progress")

    assert response.status_code == 200
    assert response.json() is None


def test_progress_returns_latest_snapshot(monkeypatch) -> None:
    progress = ProgressUpdate(current=3, total=5, zoom_level=0, percentage=60, status="Processing zoom level 0 (3/5)")
    client = get_client(monkeypatch, StubRunManager(progress=progress))

    response = client.get("/progress")

    assert response.json() == progress.model_dump()


def test_current_run_includes_progress(monkeypatch) -> None:
    progress = ProgressUpdate(current=2, total=5, zoom_level=1, percentage=40, status="Processing zoom level 1 (2/5)")
    client = get_client(monkeypatch, StubRunManager(progress=progress))

    payload = client.get("/runs/current").json()

    assert payload["status"] == "RUNNING"
    assert payload["layout_path"] == "path-1"
    assert payload["progress"]["current"] == 2


@pytest.mark.parametrize("active", [True, False])
def test_cancel_reports_whether_a_run_was_active(monkeypatch, active: bool) -> None:
    stub = StubRunManager(active=active)
    client = get_client(monkeypatch, stub)

    response = client.post("/cancel")

    assert response.json() == {"cancelled": active}
    assert stub.cancel_calls == 1
