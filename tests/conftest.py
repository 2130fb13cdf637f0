from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
from pathlib import Path

import pytest

import sprite_sync as sm


def _configure_module(
    sm_mod, monkeypatch: pytest.MonkeyPatch, paths: dict[str, Path]
) -> None:
    state_dir = paths["home_dir"] / ".local" / "state" / "sprite-sync"
    monkeypatch.setattr(sm_mod, "STATE_DIR", str(state_dir))
    monkeypatch.setattr(sm_mod, "REGISTRY_DIR", str(state_dir / "sessions"))
    monkeypatch.setattr(sm_mod, "READY_DIR", str(state_dir / "ready"))
    monkeypatch.setattr(sm_mod, "LOG_DIR", str(state_dir / "logs"))
    monkeypatch.setattr(sm_mod, "SETUP_CONF", str(paths["home_dir"] / "setup.conf"))
    monkeypatch.setattr(sm_mod, "SSH_CONFIG", str(paths["home_dir"] / ".ssh" / "config"))
    monkeypatch.setattr(sm_mod, "SSH_PUBKEY", str(paths["home_dir"] / ".ssh" / "id_ed25519.pub"))

    # Keep polling loops and retries fast
    monkeypatch.setattr(sm_mod, "PROXY_POLL_INTERVAL", 0.05)
    monkeypatch.setattr(sm_mod, "PROXY_READY_TIMEOUT", 10.0)
    monkeypatch.setattr(sm_mod, "SYNC_POLL_INTERVAL", 0.01)
    monkeypatch.setattr(sm_mod, "KILL_TIMEOUT", 2.0)
    monkeypatch.setattr(sm_mod, "WAKE_BACKOFF", 0.0)
    monkeypatch.setattr(sm_mod, "SSH_PROBE_BACKOFF", 0.0)


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    paths = {"tmp_path": tmp_path, "home_dir": home_dir}
    _configure_module(sm, monkeypatch, paths)
    return paths


@pytest.fixture
def live_pid():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    yield proc.pid
    proc.kill()
    proc.wait()


@pytest.fixture
def dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.fixture
def listener():
    """A port with something accepting on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


_FAKE_SPRITE_SCRIPT = """#!/usr/bin/env python3
import json
import os
import socket
import subprocess
import sys

STATE_PATH = os.environ["FAKE_SPRITE_STATE"]
FLAGS_WITHOUT_VALUE = {"-tty", "-skip-console"}


def load_state():
    if not os.path.exists(STATE_PATH):
        return {"sprites": []}
    with open(STATE_PATH) as f:
        return json.load(f)


def save_state(state):
    with open(STATE_PATH, "w") as f:
        json.dump(state, f)


def die(msg, code=1):
    print(msg, file=sys.stderr, flush=True)
    sys.exit(code)


def parse_flags(args):
    opts = {}
    i = 0
    while i < len(args) and args[i].startswith("-"):
        flag = args[i]
        if flag in FLAGS_WITHOUT_VALUE:
            opts[flag] = True
            i += 1
            continue
        if i + 1 >= len(args):
            die(f"missing value for {flag}")
        opts[flag] = args[i + 1]
        i += 2
    return opts, args[i:]


def handle_api(args, state):
    _, rest = parse_flags(args)
    if rest != ["/sprites"]:
        die(f"unsupported api path: {rest}")
    print(json.dumps({"sprites": [{"name": n} for n in state["sprites"]]}))
    return 0


def handle_create(args, state):
    _, rest = parse_flags(args)
    if not rest:
        die("usage: sprite create NAME")
    if rest[0] not in state["sprites"]:
        state["sprites"].append(rest[0])
        save_state(state)
    return 0


def handle_exec(args, state):
    opts, rest = parse_flags(args)
    name = opts.get("-s")
    if name not in state["sprites"]:
        die(f"sprite {name} not found")
    return subprocess.run(rest).returncode


def handle_proxy(args, state):
    opts, rest = parse_flags(args)
    name = opts.get("-s")
    if name not in state["sprites"]:
        die(f"sprite {name} not found")
    local_port = int(rest[0].split(":")[0])
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", local_port))
    server.listen(16)
    print(f"Listening on 127.0.0.1:{local_port}", flush=True)
    while True:
        conn, _ = server.accept()
        conn.close()


def main():
    if len(sys.argv) < 2:
        die("usage: sprite <command> ...")
    cmd, args = sys.argv[1], sys.argv[2:]
    state = load_state()
    handlers = {
        "api": handle_api,
        "create": handle_create,
        "exec": handle_exec,
        "proxy": handle_proxy,
    }
    if cmd not in handlers:
        die(f"unsupported command: {cmd}")
    return handlers[cmd](args, state)


if __name__ == "__main__":
    sys.exit(main())
"""


_FAKE_TMUX_SCRIPT = """#!/usr/bin/env python3
import os
import sys

if sys.argv[1:2] != ["list-sessions"]:
    print(f"unsupported tmux command: {sys.argv[1:]}", file=sys.stderr)
    sys.exit(1)
sessions = os.environ.get("FAKE_TMUX_SESSIONS", "")
if not sessions:
    print("no server running on /tmp/tmux-0/default", file=sys.stderr)
    sys.exit(1)
for entry in sessions.split(","):
    name, _, attached = entry.partition(":")
    print(f"{name}\\t{attached or '0'}")
"""


@pytest.fixture
def fake_sprite_cli(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    fake_sprite = bin_dir / "sprite"
    fake_sprite.write_text(_FAKE_SPRITE_SCRIPT)
    fake_sprite.chmod(0o755)
    fake_tmux = bin_dir / "tmux"
    fake_tmux.write_text(_FAKE_TMUX_SCRIPT)
    fake_tmux.chmod(0o755)

    state_file = tmp_path / "fake-sprite-state.json"
    state_file.write_text(json.dumps({"sprites": ["demo"]}))

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_SPRITE_STATE", str(state_file))

    return {"tmp_path": tmp_path, "state_file": state_file, "binary": fake_sprite}
