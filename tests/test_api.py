import io
import zipfile

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import REPO, FakeCloner, FakeLauncher, FakeRunner
from hostcore.api import HostingService, create_api
from hostcore.models import ApplicationRecord
from hostcore.store import APPLICATIONS, JsonRecordStore
from hostcore.supervisor import ProcessSupervisor


def make_hosting(config, launcher=None) -> HostingService:
    store = JsonRecordStore(config.records_path)
    supervisor = ProcessSupervisor(
        store,
        launcher=launcher or FakeLauncher(),
        restart_grace=config.restart_grace,
        stop_timeout=config.stop_timeout,
    )
    hosting = HostingService(config, store=store, supervisor=supervisor)
    hosting.deployer.cloner = FakeCloner()
    hosting.deployer.command_runner = FakeRunner()
    return hosting


def client_for(hosting: HostingService) -> httpx.AsyncClient:
    app = create_api(hosting=hosting, settings=hosting.config)
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.asyncio
async def test_health(config):
    async with client_for(make_hosting(config)) as client:
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}


@pytest.mark.asyncio
async def test_check_name(config):
    hosting = make_hosting(config)
    async with client_for(hosting) as client:
        resp = await client.get("/api/check-name/My Shop")
        assert resp.json() == {"name": "My Shop", "sanitized": "my-shop", "available": True}

        await client.post("/api/deploy/git", json={"repo_url": REPO, "app_name": "my-shop"})
        resp = await client.get("/api/check-name/MY-SHOP")
        assert resp.json()["available"] is False

        resp = await client.get("/api/check-name/!!!")
        assert resp.json() == {"name": "!!!", "sanitized": "", "available": False}
    await hosting.shutdown()


@pytest.mark.asyncio
async def test_deploy_git_and_lifecycle(config):
    launcher = FakeLauncher()
    hosting = make_hosting(config, launcher)
    async with client_for(hosting) as client:
        resp = await client.post(
            "/api/deploy/git",
            json={"repo_url": REPO, "app_name": "Shop"},
            headers={"X-Caller-Id": "alice"},
        )
        assert resp.status_code == 201
        payload = resp.json()
        assert payload["success"] is True
        assert payload["app"]["name"] == "shop"
        assert payload["app"]["owner"] == "alice"
        assert payload["app"]["status"] == "running"
        port = payload["app"]["port"]

        resp = await client.get("/api/apps")
        assert [app["name"] for app in resp.json()["apps"]] == ["shop"]

        resp = await client.get("/api/apps/shop/status")
        assert resp.json()["running"] is True

        resp = await client.post("/api/apps/shop/stop")
        assert resp.json()["app"]["status"] == "stopped"

        resp = await client.post("/api/apps/shop/restart")
        assert resp.json()["app"]["status"] == "running"
        assert len(launcher.calls) == 2

        resp = await client.get("/api/apps/shop/route")
        assert f"server 127.0.0.1:{port};" in resp.json()["config"]

        resp = await client.get("/api/ports")
        assert resp.json()["used_ports"] == [port]

        resp = await client.delete("/api/apps/shop")
        assert resp.json() == {"success": True, "name": "shop"}

        resp = await client.get("/api/apps/shop")
        assert resp.status_code == 404
        assert resp.json()["kind"] == "not_found"
    await hosting.shutdown()


@pytest.mark.asyncio
async def test_error_mapping(config):
    hosting = make_hosting(config)
    async with client_for(hosting) as client:
        resp = await client.post("/api/deploy/git", json={"repo_url": "git@github.com:a/b.git", "app_name": "x"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["kind"] == "invalid_input"
        assert "Invalid repository URL" in body["error"]

        await client.post("/api/deploy/git", json={"repo_url": REPO, "app_name": "shop"})
        resp = await client.post("/api/deploy/git", json={"repo_url": REPO, "app_name": "shop"})
        assert resp.status_code == 409
        assert resp.json()["kind"] == "name_conflict"

        hosting.deployer.cloner = FakeCloner(fail=True)
        resp = await client.post("/api/deploy/git", json={"repo_url": REPO, "app_name": "other"})
        assert resp.status_code == 422
        assert resp.json()["kind"] == "acquisition_failure"

        resp = await client.post("/api/deploy/git", json={"app_name": "missing-url"})
        assert resp.status_code == 422
    await hosting.shutdown()


@pytest.mark.asyncio
async def test_logs(config):
    hosting = make_hosting(config)
    async with client_for(hosting) as client:
        await client.post("/api/deploy/git", json={"repo_url": REPO, "app_name": "shop"})
        logs = config.apps_root / "shop" / "logs"
        (logs / "out.log").write_text("a\nb\nc\n")

        resp = await client.get("/api/apps/shop/logs", params={"lines": 2})
        assert resp.json() == {"name": "shop", "type": "out", "logs": "b\nc\n"}

        resp = await client.get("/api/apps/shop/logs", params={"type": "debug"})
        assert resp.status_code == 400
    await hosting.shutdown()


@pytest.mark.asyncio
async def test_deploy_archive(config):
    hosting = make_hosting(config)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("site-main/index.html", "<h1>hi</h1>")

    async with client_for(hosting) as client:
        resp = await client.post(
            "/api/deploy/archive",
            data={"app_name": "landing"},
            files={"archive": ("site.zip", buf.getvalue(), "application/zip")},
        )
        assert resp.status_code == 201
        assert resp.json()["app"]["project_type"] == "static-site"
        assert list(config.uploads_dir.iterdir()) == []
        assert (config.apps_root / "landing" / "source" / "index.html").exists()

        resp = await client.post(
            "/api/deploy/archive",
            data={"app_name": "landing"},
            files={"archive": ("site.zip", buf.getvalue(), "application/zip")},
        )
        assert resp.status_code == 409
        assert list(config.uploads_dir.iterdir()) == []
    await hosting.shutdown()


@pytest.mark.asyncio
async def test_token_required(config):
    config.require_token = True
    config.token = "s3cret"
    async with client_for(make_hosting(config)) as client:
        assert (await client.get("/health")).status_code == 200
        assert (await client.get("/api/apps")).status_code == 401
        assert (await client.get("/api/apps", headers={"X-Hostcore-Token": "wrong"})).status_code == 401
        resp = await client.get("/api/apps", headers={"X-Hostcore-Token": "s3cret"})
        assert resp.status_code == 200
        assert resp.json() == {"apps": []}


def _register_static(hosting, config):
    root = config.apps_root / "site"
    (root / "source").mkdir(parents=True)
    (root / "logs").mkdir()
    (root / "source" / "index.html").write_text("<p>x</p>")
    (root / "logs" / "out.log").write_text("booted\n")
    record = ApplicationRecord(
        name="site",
        port=43150,
        domain="site.apps.example.com",
        project_type="static-site",
        source_directory=str(root / "source"),
        root_directory=str(root),
    )
    hosting.store.insert(APPLICATIONS, record.to_dict())


def test_terminal_websocket(config):
    hosting = make_hosting(config)
    _register_static(hosting, config)
    app = create_api(hosting=hosting, settings=config)

    with TestClient(app) as client:
        with client.websocket_connect("/ws/terminal/site") as ws:
            first = ws.receive_json()
            assert first == {"type": "logs", "out": "booted\n", "error": ""}
            assert "Connected to site" in ws.receive_json()["content"]
            ws.receive_json()

            ws.send_json({"type": "command", "command": "rm -rf /"})
            rejected = ws.receive_json()
            assert rejected["type"] == "error"
            assert "destructive" in rejected["content"]

            ws.send_json({"type": "command", "command": "ls"})
            output = ""
            while "Process exited" not in output:
                message = ws.receive_json()
                output += message["content"]
            assert "index.html\r\n" in output


def test_terminal_unknown_app(config):
    app = create_api(hosting=make_hosting(config), settings=config)
    with TestClient(app) as client:
        with client.websocket_connect("/ws/terminal/ghost") as ws:
            message = ws.receive_json()
            assert message["type"] == "error"
            assert "Application not found" in message["content"]
