"""The ``sprite`` CLI wrapper, against fake ``_run`` results and the fake CLI script."""

from __future__ import annotations

import asyncio

import pytest

import sprite_sync as sm
from sprite_sync import SpriteClient


class TestListNames:
    def test_fake_cli_lists_sprites(self, fake_sprite_cli):
        assert asyncio.run(SpriteClient().list_names()) == {"demo"}

    def test_transient_timeouts_are_retried(self, monkeypatch):
        calls = []

        async def fake_run(cmd, timeout=30.0, cwd=None):
            calls.append(cmd)
            if len(calls) < 3:
                raise asyncio.TimeoutError()
            return 0, '{"sprites": [{"name": "demo"}, {"name": "other"}]}', ""

        monkeypatch.setattr(sm, "_run", fake_run)
        assert asyncio.run(SpriteClient().list_names()) == {"demo", "other"}
        assert len(calls) == 3

    def test_gives_up_after_bounded_attempts(self, monkeypatch):
        calls = []

        async def fake_run(cmd, timeout=30.0, cwd=None):
            calls.append(cmd)
            return 1, "", "502 bad gateway"

        monkeypatch.setattr(sm, "_run", fake_run)
        with pytest.raises(sm.SandboxUnavailableError, match="502 bad gateway"):
            asyncio.run(SpriteClient().list_names(attempts=3))
        assert len(calls) == 3

    def test_missing_binary(self):
        client = SpriteClient(binary="/nonexistent/sprite")
        with pytest.raises(sm.SandboxUnavailableError, match="Cannot run"):
            asyncio.run(client.list_names())


class TestCreateAndWake:
    def test_create_timeout_is_unavailable(self, monkeypatch):
        async def fake_run(cmd, timeout=30.0, cwd=None):
            raise asyncio.TimeoutError()

        monkeypatch.setattr(sm, "_run", fake_run)
        with pytest.raises(sm.SandboxUnavailableError, match="timed out"):
            asyncio.run(SpriteClient().create("demo"))

    def test_create_with_missing_binary(self):
        client = SpriteClient(binary="/nonexistent/sprite")
        with pytest.raises(sm.SandboxUnavailableError):
            asyncio.run(client.create("demo"))

    def test_wake_with_missing_binary(self):
        client = SpriteClient(binary="/nonexistent/sprite")
        with pytest.raises(sm.SandboxUnavailableError):
            asyncio.run(client.wake("demo", attempts=2))

    def test_fake_cli_create_and_wake(self, fake_sprite_cli):
        async def scenario():
            client = SpriteClient()
            await client.create("fresh")
            assert await client.exists("fresh")
            await client.wake("fresh")

        asyncio.run(scenario())


# ── tmux sessions ───────────────────────────────────────────────────────


class TestSessions:
    def test_lists_sessions_with_attachment(self, fake_sprite_cli, monkeypatch):
        monkeypatch.setenv("FAKE_TMUX_SESSIONS", "bash:0,claude:1")
        sessions = asyncio.run(SpriteClient().list_sessions("demo"))
        assert sessions == [("bash", False), ("claude", True)]

    def test_no_tmux_server_means_no_sessions(self, fake_sprite_cli, monkeypatch):
        monkeypatch.delenv("FAKE_TMUX_SESSIONS", raising=False)
        assert asyncio.run(SpriteClient().list_sessions("demo")) == []

    def test_unknown_sprite_is_an_error(self, fake_sprite_cli):
        with pytest.raises(sm.SpriteSyncError, match="not found"):
            asyncio.run(SpriteClient().list_sessions("ghost"))

    def test_format_sessions(self):
        assert sm.format_sessions("demo", []) == "No active tmux sessions on demo"
        text = sm.format_sessions("demo", [("bash", False), ("claude", True)])
        assert text.splitlines() == ["tmux sessions on demo:", "  bash", "  claude (attached)"]

    def test_sessions_command(self, fake_sprite_cli, monkeypatch, capsys):
        monkeypatch.setenv("FAKE_TMUX_SESSIONS", "claude:1")
        assert sm.main(["sessions", "demo"]) == 0
        assert "claude (attached)" in capsys.readouterr().out

    def test_sessions_command_without_server(self, fake_sprite_cli, monkeypatch, capsys):
        monkeypatch.delenv("FAKE_TMUX_SESSIONS", raising=False)
        assert sm.main(["sessions", "demo"]) == 0
        assert "No active tmux sessions on demo" in capsys.readouterr().out

    def test_sessions_tool(self, fake_sprite_cli, monkeypatch):
        monkeypatch.setenv("FAKE_TMUX_SESSIONS", "bash:0")
        assert asyncio.run(sm.sprite_sessions("demo")) == "tmux sessions on demo:\n  bash"
