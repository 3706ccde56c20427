from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp.test_utils import AioHTTPTestCase

from vibeplane.api.server import ControlPlaneServer, _is_loopback
from vibeplane.engine.agent_driver import AgentDriver
from vibeplane.engine.config import ControlPlaneConfig
from vibeplane.engine.errors import VcsFatalError
from vibeplane.engine.providers.base import AgentFinished, AgentLoopAdapter
from vibeplane.engine.registry import SessionRegistry
from vibeplane.engine.scheduler import OperationScheduler


class _GatedAdapter(AgentLoopAdapter):
    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.gate.set()

    @property
    def name(self) -> str:
        return "gated"

    async def stream(self, request):
        await self.gate.wait()
        yield AgentFinished(session_id="agent-1")


def _mock_git(working_dir: str) -> MagicMock:
    git = MagicMock()
    git.working_dir = Path(working_dir)
    git.current_branch = AsyncMock(return_value="main")
    git.auto_commit = AsyncMock(return_value=None)
    git.create_branch = AsyncMock()
    git.create_branch_from = AsyncMock()
    git.checkout = AsyncMock()
    git.merge = AsyncMock()
    git.push = AsyncMock()
    git.branch_exists = AsyncMock(side_effect=lambda name: name.startswith("feat/vibe-"))
    git.list_branches = AsyncMock(return_value=["feat/vibe-aaaa0001", "feat/vibe-bbbb0002"])
    return git


class TestControlPlaneServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        self.git = _mock_git(self.tmpdir)
        self.adapter = _GatedAdapter()
        self.scheduler = OperationScheduler(
            SessionRegistry(), self.git, AgentDriver(self.adapter), ControlPlaneConfig(),
        )
        self.server = ControlPlaneServer(self.scheduler)
        return self.server.app

    async def asyncTearDown(self) -> None:
        self.adapter.gate.set()
        await self.scheduler.shutdown()
        await super().asyncTearDown()

    async def _create_ready_session(self) -> dict:
        resp = await self.client.post("/sessions")
        self.assertEqual(resp.status, 202)
        created = await resp.json()
        await self.scheduler.wait_idle()
        return created

    async def test_health(self) -> None:
        resp = await self.client.get("/health")
        self.assertEqual(resp.status, 200)
        payload = await resp.json()
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["workingDir"], self.tmpdir)

    async def test_create_returns_placeholder_then_provisions(self) -> None:
        resp = await self.client.post("/sessions", json={"baseRef": "release"})
        self.assertEqual(resp.status, 202)
        created = await resp.json()
        self.assertEqual(created["operation"], "creating")
        self.assertTrue(created["branchName"].startswith("feat/vibe-"))

        await self.scheduler.wait_idle()
        resp = await self.client.get(f"/sessions/{created['id']}")
        session = await resp.json()
        self.assertEqual(session["operation"], "none")
        self.assertEqual(session["status"], "idle")
        self.assertIsNone(session["lastCommitHash"])
        self.assertEqual(session["baseRef"], "release")
        self.git.create_branch_from.assert_awaited_once_with(created["branchName"], "release")

    async def test_list_sessions(self) -> None:
        created = await self._create_ready_session()
        resp = await self.client.get("/sessions")
        payload = await resp.json()
        self.assertEqual([s["id"] for s in payload["sessions"]], [created["id"]])

    async def test_unknown_session_is_404(self) -> None:
        resp = await self.client.get("/sessions/missing")
        self.assertEqual(resp.status, 404)
        self.assertIn("not found", (await resp.json())["error"])

        resp = await self.client.post("/sessions/missing/merge")
        self.assertEqual(resp.status, 404)
        payload = await resp.json()
        self.assertFalse(payload["success"])

        resp = await self.client.post("/sessions/missing/chat", json={"message": "hi"})
        self.assertEqual(resp.status, 404)

        resp = await self.client.delete("/sessions/missing")
        self.assertEqual(resp.status, 404)

    async def test_chat_returns_running_and_conflicts_while_busy(self) -> None:
        created = await self._create_ready_session()
        self.adapter.gate.clear()

        resp = await self.client.post(f"/sessions/{created['id']}/chat", json={"message": "Add a button"})
        self.assertEqual(resp.status, 202)
        self.assertEqual(await resp.json(), {"status": "running"})

        resp = await self.client.post(f"/sessions/{created['id']}/chat", json={"message": "again"})
        self.assertEqual(resp.status, 409)
        resp = await self.client.post(f"/sessions/{created['id']}/push")
        self.assertEqual(resp.status, 409)
        payload = await resp.json()
        self.assertFalse(payload["success"])
        self.assertIn("busy", payload["error"])

        self.adapter.gate.set()
        await self.scheduler.wait_idle()
        resp = await self.client.get(f"/sessions/{created['id']}")
        session = await resp.json()
        self.assertEqual(session["status"], "idle")
        self.assertEqual(session["history"][0], {"role": "user", "content": "Add a button"})

    async def test_chat_requires_message(self) -> None:
        created = await self._create_ready_session()
        resp = await self.client.post(f"/sessions/{created['id']}/chat", json={})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post(
            f"/sessions/{created['id']}/chat", data="not json",
            headers={"Content-Type": "application/json"},
        )
        self.assertEqual(resp.status, 400)

    async def test_merge_success_removes_session(self) -> None:
        created = await self._create_ready_session()
        resp = await self.client.post(f"/sessions/{created['id']}/merge")
        self.assertEqual(resp.status, 202)
        self.assertEqual(await resp.json(), {"success": True})

        await self.scheduler.wait_idle()
        resp = await self.client.get(f"/sessions/{created['id']}")
        self.assertEqual(resp.status, 404)
        self.git.push.assert_awaited_with("origin", "main")

    async def test_merge_failure_surfaces_error_on_poll(self) -> None:
        created = await self._create_ready_session()
        self.git.merge.side_effect = VcsFatalError("merge", "CONFLICT (content)")

        resp = await self.client.post(f"/sessions/{created['id']}/merge")
        self.assertEqual(resp.status, 202)
        await self.scheduler.wait_idle()

        resp = await self.client.get(f"/sessions/{created['id']}")
        session = await resp.json()
        self.assertEqual(session["status"], "error")
        self.assertEqual(session["operation"], "none")
        self.assertIn("CONFLICT", session["errorMessage"])

    async def test_switch_and_push(self) -> None:
        created = await self._create_ready_session()
        for action in ("switch", "push"):
            resp = await self.client.post(f"/sessions/{created['id']}/{action}")
            self.assertEqual(resp.status, 202)
            self.assertEqual(await resp.json(), {"success": True})
            await self.scheduler.wait_idle()
        self.git.push.assert_awaited_with("origin", created["branchName"])

    async def test_delete_session(self) -> None:
        created = await self._create_ready_session()
        resp = await self.client.delete(f"/sessions/{created['id']}")
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["status"], "removed")
        resp = await self.client.get("/sessions")
        self.assertEqual((await resp.json())["sessions"], [])

    async def test_adopt_and_branches(self) -> None:
        resp = await self.client.post("/sessions/adopt", json={"branch": "feat/vibe-aaaa0001"})
        self.assertEqual(resp.status, 201)
        adopted = await resp.json()
        self.assertEqual(adopted["branchName"], "feat/vibe-aaaa0001")
        self.assertEqual(adopted["operation"], "none")

        resp = await self.client.post("/sessions/adopt", json={"branch": "feat/vibe-aaaa0001"})
        self.assertEqual(resp.status, 409)
        resp = await self.client.post("/sessions/adopt", json={"branch": "other"})
        self.assertEqual(resp.status, 404)
        resp = await self.client.post("/sessions/adopt", json={})
        self.assertEqual(resp.status, 400)

        resp = await self.client.get("/branches")
        payload = await resp.json()
        self.assertEqual(payload, {"branches": ["feat/vibe-bbbb0002"], "current": "main"})


def _server(**kwargs) -> ControlPlaneServer:
    scheduler = OperationScheduler(
        SessionRegistry(), _mock_git(tempfile.mkdtemp()),
        AgentDriver(_GatedAdapter()), ControlPlaneConfig(),
    )
    return ControlPlaneServer(scheduler, **kwargs)


@pytest.mark.asyncio
async def test_non_loopback_client_rejected() -> None:
    handler = AsyncMock()
    resp = await _server()._loopback_only_middleware(SimpleNamespace(remote="10.0.0.5"), handler)
    assert resp.status == 403
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_remote_clients_allowed_when_configured() -> None:
    handler = AsyncMock(return_value="ok")
    server = _server(allow_remote_clients=True)
    resp = await server._loopback_only_middleware(SimpleNamespace(remote="10.0.0.5"), handler)
    assert resp == "ok"


def test_is_loopback() -> None:
    assert _is_loopback("127.0.0.1")
    assert _is_loopback("::1")
    assert _is_loopback("localhost")
    assert not _is_loopback("192.168.1.20")
    assert not _is_loopback(None)
