"""End-to-end tests for the daemon HTTP API with real git and real child processes."""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import commit_file, free_port, git
from iterate_daemon.config import IterateConfig
from iterate_daemon.runtime.orchestrator import IterationError, ProcessManager
from iterate_daemon.runtime.orchestrator import service as service_module
from iterate_daemon.server.api import create_app


@pytest.fixture(autouse=True)
def _no_package_install(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(service_module, "install_command", lambda config: "true")


@pytest.fixture
def make_app(repo: Path) -> Callable[..., FastAPI]:
    def factory(
        *,
        dev_command: str = "sleep 30",
        max_iterations: int = 3,
        build_command: Optional[str] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> FastAPI:
        base_port = free_port()
        config = IterateConfig(
            dev_command=dev_command,
            base_port=base_port,
            max_iterations=max_iterations,
            build_command=build_command,
        )
        return create_app(
            project_dir=repo,
            config=config,
            processes=ProcessManager(base_port, stop_timeout=2.0),
            on_shutdown=on_shutdown,
        )

    return factory


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def test_create_iteration_broadcasts_lifecycle_in_order(make_app, repo: Path) -> None:
    app = make_app()

    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "state:sync"

            response = client.post("/api/iterations", json={"name": "hero"})
            assert response.status_code == 200
            body = response.json()

            messages = [ws.receive_json() for _ in range(5)]

    assert body["status"] == "ready"
    assert body["branch"] == "iterate/hero"
    assert body["port"] >= app.state.store.config.base_port
    assert body["pid"] > 0
    assert Path(body["worktreePath"]).is_dir()
    assert [(m["type"], m["payload"].get("status")) for m in messages] == [
        ("iteration:status", "creating"),
        ("iteration:status", "installing"),
        ("iteration:status", "starting"),
        ("iteration:created", "ready"),
        ("iteration:status", "ready"),
    ]


@pytest.mark.parametrize("name", ["", "a/b", "has space", "../escape"])
def test_invalid_names_are_rejected(make_app, repo: Path, name: str) -> None:
    with TestClient(make_app()) as client:
        response = client.post("/api/iterations", json={"name": name})
        assert response.status_code == 400
        assert client.get("/api/iterations").json() == {}

    assert git(repo, "worktree", "list").count("\n") == 0


def test_duplicate_name_conflicts_and_keeps_original(make_app) -> None:
    with TestClient(make_app()) as client:
        original = client.post("/api/iterations", json={"name": "hero"}).json()
        response = client.post("/api/iterations", json={"name": "hero"})
        after = client.get("/api/iterations").json()["hero"]

    assert response.status_code == 409
    assert after["status"] == "ready"
    assert (after["pid"], after["port"], after["createdAt"]) == (
        original["pid"],
        original["port"],
        original["createdAt"],
    )


def test_capacity_limit(make_app) -> None:
    with TestClient(make_app(max_iterations=1)) as client:
        assert client.post("/api/iterations", json={"name": "one"}).status_code == 200
        response = client.post("/api/iterations", json={"name": "two"})

    assert response.status_code == 429
    assert "Maximum iterations (1)" in response.json()["detail"]


def test_bad_base_branch_marks_iteration_error(make_app) -> None:
    with TestClient(make_app()) as client:
        response = client.post("/api/iterations", json={"name": "hero", "baseBranch": "nope"})
        iterations = client.get("/api/iterations").json()

    assert response.status_code == 500
    assert "Failed to create iteration" in response.json()["detail"]
    assert iterations["hero"]["status"] == "error"


def test_failing_build_command_marks_iteration_error(make_app) -> None:
    with TestClient(make_app(build_command="exit 7")) as client:
        response = client.post("/api/iterations", json={"name": "hero"})
        status = client.get("/api/iterations").json()["hero"]["status"]

    assert response.status_code == 500
    assert "exited with status 7" in response.json()["detail"]
    assert status == "error"


def test_unexpected_server_exit_flips_status_to_error(make_app) -> None:
    with TestClient(make_app(dev_command="sleep 0.3")) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert client.post("/api/iterations", json={"name": "flaky"}).json()["status"] == "ready"

            def errored() -> bool:
                return client.get("/api/iterations").json()["flaky"]["status"] == "error"

            assert _wait_for(errored)
            types = []
            while True:
                message = ws.receive_json()
                types.append((message["type"], message["payload"].get("status")))
                if message["payload"].get("status") == "error":
                    break

    assert types[-1] == ("iteration:status", "error")


def test_delete_iteration_removes_worktree_and_record(make_app, repo: Path) -> None:
    with TestClient(make_app()) as client:
        worktree = Path(client.post("/api/iterations", json={"name": "hero"}).json()["worktreePath"])

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert client.delete("/api/iterations/hero").json() == {"ok": True}
            removed = ws.receive_json()

        assert client.get("/api/iterations").json() == {}
        assert client.delete("/api/iterations/hero").status_code == 404

    assert removed == {"type": "iteration:removed", "payload": {"name": "hero"}}
    assert not worktree.exists()
    assert git(repo, "branch", "--list", "iterate/hero") == ""


def test_worktrees_endpoint_lists_iteration_worktrees(make_app) -> None:
    with TestClient(make_app()) as client:
        client.post("/api/iterations", json={"name": "hero"})
        entries = client.get("/api/worktrees").json()

    assert [entry["branch"] for entry in entries] == ["iterate/hero"]


def test_pick_merges_winner_and_removes_all(make_app, repo: Path) -> None:
    with TestClient(make_app()) as client:
        winner = client.post("/api/iterations", json={"name": "blue"}).json()
        client.post("/api/iterations", json={"name": "red"})
        commit_file(Path(winner["worktreePath"]), "hero.css", "h1 { color: blue; }\n", "blue hero")

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            response = client.post("/api/iterations/pick", json={"name": "blue", "strategy": "merge"})
            messages = [ws.receive_json() for _ in range(4)]

        assert response.json() == {"ok": True, "merged": "blue"}
        assert client.get("/api/iterations").json() == {}

    assert (repo / "hero.css").exists()
    assert [m["type"] for m in messages] == [
        "iteration:status",
        "iteration:status",
        "iteration:removed",
        "iteration:removed",
    ]
    assert {m["payload"]["status"] for m in messages[:2]} == {"stopped"}


def test_pick_conflict_is_500_and_repo_untouched(make_app, repo: Path) -> None:
    with TestClient(make_app()) as client:
        winner = client.post("/api/iterations", json={"name": "blue"}).json()
        commit_file(Path(winner["worktreePath"]), "index.html", "<h1>blue</h1>\n", "blue")
        commit_file(repo, "index.html", "<h1>main</h1>\n", "main")

        response = client.post("/api/iterations/pick", json={"name": "blue"})
        iterations = client.get("/api/iterations").json()

    assert response.status_code == 500
    assert git(repo, "status", "--porcelain") == ""
    assert iterations["blue"]["status"] == "stopped"


def test_pick_unknown_iteration_is_404(make_app) -> None:
    with TestClient(make_app()) as client:
        response = client.post("/api/iterations/pick", json={"name": "ghost"})

    assert response.status_code == 404


def test_command_creates_tagged_variations(make_app) -> None:
    with TestClient(make_app(max_iterations=3)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            response = client.post("/api/command", json={"command": "hero", "prompt": "make it pop", "count": 2})
            started = ws.receive_json()

        body = response.json()
        latest = client.get("/api/command/latest").json()
        by_id = client.get(f"/api/command/{body['commandId']}").json()
        iterations = client.get("/api/iterations").json()

    assert response.status_code == 200
    assert started["type"] == "command:started"
    assert started["payload"]["iterations"] == ["hero-1", "hero-2"]
    assert sorted(body["results"]) == ["hero-1", "hero-2"]
    assert body["errors"] == {}
    assert latest["commandId"] == body["commandId"] == by_id["commandId"]
    assert latest["prompt"] == "make it pop"
    assert iterations["hero-1"]["commandPrompt"] == "make it pop"
    assert iterations["hero-2"]["commandId"] == body["commandId"]


def test_command_over_capacity_has_no_side_effects(make_app) -> None:
    with TestClient(make_app(max_iterations=2)) as client:
        response = client.post("/api/command", json={"command": "hero", "prompt": "x", "count": 3})
        assert client.get("/api/iterations").json() == {}
        assert client.get("/api/command/latest").status_code == 404

    assert response.status_code == 429


def test_annotation_routes(make_app) -> None:
    with TestClient(make_app()) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "annotation:create", "payload": {"iteration": "hero", "comment": "bigger"}})
            annotation: dict[str, Any] = ws.receive_json()["payload"]

            assert [a["id"] for a in client.get("/api/annotations/pending").json()] == [annotation["id"]]

            resolved = client.patch(f"/api/annotations/{annotation['id']}/resolve")
            updated = ws.receive_json()

        assert resolved.json()["status"] == "resolved"
        assert updated["type"] == "annotation:updated"
        assert client.get("/api/annotations/pending").json() == []
        assert len(client.get("/api/annotations", params={"status": "resolved"}).json()) == 1
        assert len(client.get("/api/annotations").json()) == 1
        assert client.patch("/api/annotations/missing/dismiss").status_code == 404
        assert client.patch(f"/api/annotations/{annotation['id']}/explode").status_code == 422


def test_dom_change_routes(make_app) -> None:
    with TestClient(make_app()) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json(
                {
                    "type": "dom:style",
                    "payload": {"iteration": "hero", "selector": "h1", "before": {"color": "red"}, "after": {"color": "blue"}},
                }
            )
            ws.receive_json()

        changes = client.get("/api/dom-changes").json()
        assert client.delete("/api/dom-changes").json() == {"ok": True}
        remaining = client.get("/api/dom-changes").json()
        state = client.get("/api/state").json()

    assert changes[0]["type"] == "style"
    assert changes[0]["after"]["computedStyles"] == {"color": "blue"}
    assert remaining == []
    assert state["domChanges"] == []


def test_shutdown_stops_servers_and_invokes_callback(make_app) -> None:
    called = threading.Event()
    app = make_app(on_shutdown=called.set)

    with TestClient(app) as client:
        client.post("/api/iterations", json={"name": "hero"})
        assert client.post("/api/shutdown").json() == {"ok": True}
        assert app.state.service.processes.names() == []
        assert called.wait(timeout=3)


def test_healthz(make_app) -> None:
    with TestClient(make_app()) as client:
        body = client.get("/healthz").json()

    assert body["status"] == "ok"
    assert body["iterations"] == 0


def test_pick_squash_over_two_iterations_removes_both_worktrees(make_app, repo: Path) -> None:
    with TestClient(make_app()) as client:
        blue = client.post("/api/iterations", json={"name": "blue"}).json()
        red = client.post("/api/iterations", json={"name": "red"}).json()
        commit_file(Path(blue["worktreePath"]), "a.css", "a {}\n", "first")
        commit_file(Path(blue["worktreePath"]), "b.css", "b {}\n", "second")

        response = client.post("/api/iterations/pick", json={"name": "blue", "strategy": "squash"})
        iterations = client.get("/api/iterations").json()

    assert response.json() == {"ok": True, "merged": "blue"}
    assert iterations == {}
    assert not Path(blue["worktreePath"]).exists()
    assert not Path(red["worktreePath"]).exists()
    assert git(repo, "log", "-1", "--pretty=%s") == "iterate: pick blue"
    assert (repo / "a.css").exists() and (repo / "b.css").exists()


def test_command_requires_a_name(make_app) -> None:
    with TestClient(make_app()) as client:
        response = client.post("/api/command", json={"command": "", "prompt": "x", "count": 2})
        iterations = client.get("/api/iterations").json()

    assert response.status_code == 400
    assert iterations == {}


async def _until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


def _status_of(service: Any, name: str) -> Optional[str]:
    info = service.store.get_iteration(name)
    return info.status if info is not None else None


def test_delete_while_installing_is_not_written_back(make_app, repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(service_module, "install_command", lambda config: "sleep 1")
    service = make_app().state.service

    async def scenario() -> IterationError:
        creating = asyncio.get_running_loop().create_task(service.create_iteration("hero"))
        try:
            assert await _until(lambda: _status_of(service, "hero") == "installing")
            await service.remove_iteration("hero")
            with pytest.raises(IterationError) as excinfo:
                await creating
            return excinfo.value
        finally:
            await service.shutdown()

    error = asyncio.run(scenario())

    assert error.status_code == 409
    assert service.store.get_iteration("hero") is None
    assert service.processes.names() == []
    assert not service.worktrees.worktree_path("hero").exists()
    assert git(repo, "branch", "--list", "iterate/hero") == ""


def test_pick_while_another_is_installing_leaves_nothing_behind(
    make_app, repo: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(service_module, "install_command", lambda config: "sleep 1")
    service = make_app().state.service

    async def scenario() -> IterationError:
        await service.create_iteration("winner")
        late = asyncio.get_running_loop().create_task(service.create_iteration("late"))
        try:
            assert await _until(lambda: _status_of(service, "late") == "installing")
            assert await service.pick("winner") == {"ok": True, "merged": "winner"}
            with pytest.raises(IterationError) as excinfo:
                await late
            return excinfo.value
        finally:
            await service.shutdown()

    error = asyncio.run(scenario())

    assert error.status_code == 409
    assert service.store.get_iterations() == {}
    assert service.processes.names() == []
    assert not service.worktrees.worktree_path("winner").exists()
    assert not service.worktrees.worktree_path("late").exists()
