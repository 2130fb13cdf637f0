"""Tests for the on-disk coordination state: registry, ports and readiness."""

from __future__ import annotations

import os
import time

import pytest

import sprite_sync as sm
from sprite_sync import ReadinessCache, SessionRegistry


@pytest.fixture
def registry(tmp_path) -> SessionRegistry:
    return SessionRegistry(str(tmp_path / "sessions"))


# ── References ──────────────────────────────────────────────────────────


class TestReferences:
    def test_register_is_idempotent(self, registry, live_pid):
        registry.register("demo", live_pid)
        registry.register("demo", live_pid)
        assert registry.referents("demo") == [live_pid]

    def test_last_referent_detection(self, registry, live_pid):
        me = os.getpid()
        registry.register("demo", me)
        registry.register("demo", live_pid)
        assert registry.unregister("demo", me) is False
        assert registry.unregister("demo", live_pid) is True

    def test_unregister_unknown_pid(self, registry):
        assert registry.unregister("demo", 424242) is True

    def test_stale_referent_is_pruned(self, registry, dead_pid, live_pid):
        registry.register("demo", dead_pid)
        registry.register("demo", live_pid)
        assert registry.referents("demo") == [live_pid]
        assert not os.path.exists(os.path.join(registry.path("demo"), f"{dead_pid}.user"))

    def test_only_stale_referents_means_last(self, registry, dead_pid):
        me = os.getpid()
        registry.register("demo", me)
        registry.register("demo", dead_pid)
        assert registry.unregister("demo", me) is True

    def test_garbage_reference_file_is_pruned(self, registry, live_pid):
        registry.register("demo", live_pid)
        with open(os.path.join(registry.path("demo"), "junk.user"), "w") as f:
            f.write("not a pid")
        assert registry.referents("demo") == [live_pid]

    def test_names(self, registry, live_pid):
        assert registry.names() == []
        registry.register("b-sprite", live_pid)
        registry.register("a-sprite", live_pid)
        assert registry.names() == ["a-sprite", "b-sprite"]

    def test_rejects_path_like_names(self, registry):
        with pytest.raises(ValueError):
            registry.register("../outside", os.getpid())


# ── Tunnel record ───────────────────────────────────────────────────────


class TestTunnelRecord:
    def test_query_active_live(self, registry, live_pid, listener):
        registry.publish("demo", listener, live_pid)
        assert registry.query_active("demo") == (listener, live_pid)

    def test_query_active_nothing_recorded(self, registry):
        assert registry.query_active("demo") is None

    def test_query_active_dead_pid(self, registry, dead_pid, listener):
        registry.publish("demo", listener, dead_pid)
        assert registry.query_active("demo") is None

    def test_query_active_port_not_listening(self, registry, live_pid, free_port):
        registry.publish("demo", free_port, live_pid)
        assert registry.query_active("demo") is None

    def test_publish_leaves_no_temp_files(self, registry, live_pid, listener):
        registry.publish("demo", listener, live_pid)
        assert sorted(os.listdir(registry.path("demo"))) == ["port", "proxy.pid"]

    def test_clear_proxy_keeps_port_and_referents(self, registry, live_pid, listener):
        registry.register("demo", live_pid)
        registry.publish("demo", listener, live_pid)
        registry.clear_proxy("demo")
        assert registry.recorded_proxy_pid("demo") is None
        assert registry.recorded_port("demo") == listener
        assert registry.referents("demo") == [live_pid]
        assert registry.query_active("demo") is None

    def test_destroy(self, registry, live_pid, listener):
        registry.register("demo", live_pid)
        registry.publish("demo", listener, live_pid)
        registry.destroy("demo")
        assert not os.path.exists(registry.path("demo"))
        registry.destroy("demo")


# ── Port allocation ─────────────────────────────────────────────────────


class TestAllocatePort:
    def test_free_base_port_is_used(self, monkeypatch):
        monkeypatch.setattr(sm, "_port_listening", lambda port: False)
        assert sm.allocate_port("demo") == sm.base_port("demo")

    def test_busy_base_port_probes_forward(self, monkeypatch):
        monkeypatch.setattr(sm, "base_port", lambda name: 20000)
        monkeypatch.setattr(sm, "_port_listening", lambda port: port in {20000, 20001})
        assert sm.allocate_port("demo") == 20002

    def test_recorded_port_is_preferred(self, monkeypatch):
        monkeypatch.setattr(sm, "_port_listening", lambda port: False)
        assert sm.allocate_port("demo", preferred=23456) == 23456

    def test_busy_preferred_port_falls_back(self, monkeypatch):
        monkeypatch.setattr(sm, "_port_listening", lambda port: port == 23456)
        assert sm.allocate_port("demo", preferred=23456) == sm.base_port("demo")

    def test_window_exhausted(self, monkeypatch):
        monkeypatch.setattr(sm, "_port_listening", lambda port: True)
        with pytest.raises(sm.PortUnavailableError):
            sm.allocate_port("demo", window=5)

    def test_probe_wraps_inside_range(self, monkeypatch):
        checked = []

        def listening(port):
            checked.append(port)
            return len(checked) < 3

        monkeypatch.setattr(sm, "_port_listening", listening)
        monkeypatch.setattr(sm, "base_port", lambda name: sm.PORT_MAX - 1)
        assert sm.allocate_port("demo") == sm.PORT_MIN + 1
        assert checked == [sm.PORT_MAX - 1, sm.PORT_MIN, sm.PORT_MIN + 1]


# ── Readiness ───────────────────────────────────────────────────────────


class TestReadinessCache:
    def test_not_ready_without_marker(self):
        assert not ReadinessCache().is_ready("demo")

    def test_mark_ready_without_config(self):
        cache = ReadinessCache()
        cache.mark_ready("demo")
        assert cache.is_ready("demo")

    def test_config_change_invalidates(self, tmp_path):
        conf = tmp_path / "setup.conf"
        conf.write_text("step 1\n")
        cache = ReadinessCache(root=str(tmp_path / "ready"), config_path=str(conf))
        cache.mark_ready("demo")
        assert cache.is_ready("demo")

        later = time.time() + 60
        os.utime(conf, (later, later))
        assert not cache.is_ready("demo")

        cache.mark_ready("demo")
        os.utime(cache.marker("demo"), (later + 1, later + 1))
        assert cache.is_ready("demo")

    def test_invalidate(self):
        cache = ReadinessCache()
        cache.mark_ready("demo")
        cache.invalidate("demo")
        assert not cache.is_ready("demo")
        cache.invalidate("demo")
