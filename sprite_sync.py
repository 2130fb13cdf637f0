#!/usr/bin/env python3
"""Keep a local checkout and a remote sprite sandbox in two-way sync.

Every invocation is its own short-lived process.  The tunnel and the
mutagen session they share are coordinated through a per-sprite registry
directory on disk plus process signals; there is no supervising daemon.
"""

import argparse
import asyncio
import inspect
import json
import logging
import os
import re
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import time
import zlib
from dataclasses import dataclass, field
from typing import Callable, Optional

from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only; stdout carries user output and MCP frames) ─────

log = logging.getLogger("sprite-sync")

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

# ── Config ───────────────────────────────────────────────────────────────

SPRITE_BINARY = "sprite"
MUTAGEN_BINARY = "mutagen"

# Coordination state (XDG-friendly)
STATE_DIR = os.path.expanduser("~/.local/state/sprite-sync")
REGISTRY_DIR = os.path.join(STATE_DIR, "sessions")
READY_DIR = os.path.join(STATE_DIR, "ready")
LOG_DIR = os.path.join(STATE_DIR, "logs")

# Provisioning config; its mtime invalidates readiness markers
SETUP_CONF = os.path.expanduser("~/.config/sprite/setup.conf")
SSH_CONFIG = os.path.expanduser("~/.ssh/config")
SSH_PUBKEY = os.path.expanduser("~/.ssh/id_ed25519.pub")

DEFAULT_REMOTE_HOME = "/home/sprite"
REMOTE_SSH_PORT = 22

# Deterministic tunnel ports
PORT_MIN = 10000
PORT_MAX = 60000
PORT_PROBE_WINDOW = 20

PROXY_READY_TIMEOUT = 30.0
PROXY_POLL_INTERVAL = 0.5
KILL_TIMEOUT = 5.0

SYNC_CREATE_TIMEOUT = 120.0
SYNC_READY_TIMEOUT = 120.0
SYNC_POLL_INTERVAL = 2.0
TERMINATE_TIMEOUT = 15.0
FLUSH_TIMEOUT = 60.0
CONFLICT_SAMPLE_LIMIT = 5

# Delay between the last client leaving and teardown
GRACE_PERIOD = 30.0
GRACE_POLL_INTERVAL = 1.0

WAKE_ATTEMPTS = 5
WAKE_BACKOFF = 2.0
SSH_PROBE_ATTEMPTS = 10
SSH_PROBE_BACKOFF = 1.0
RECOVER_PROBE_ATTEMPTS = 3

MAX_OUTPUT = 4000

SESSION_PREFIX = "sprite-"
SSH_ALIAS_PREFIX = "sprite-mutagen-"

# Always excluded from sync, and never descended into when collecting ignores
DEFAULT_IGNORES = ["node_modules", ".next", "dist", "build", ".DS_Store", "._*"]
# Extra build artifacts excluded when the directory is not a git checkout
FALLBACK_IGNORES = ["__pycache__", ".venv", "venv", "target", ".gradle", ".pytest_cache"]
VCS_DIR = ".git"
IGNORE_FILE = ".gitignore"


# ── Errors ───────────────────────────────────────────────────────────────


class SpriteSyncError(RuntimeError):
    pass


class SandboxUnavailableError(SpriteSyncError):
    """The sprite never answered; there is no degraded mode for this."""


class PortUnavailableError(SpriteSyncError):
    pass


class ProxyError(SpriteSyncError):
    pass


class TunnelStaleError(ProxyError):
    """The tunnel process is alive but nothing answers through it."""


class SyncEngineError(SpriteSyncError):
    pass


class ProvisionError(SpriteSyncError):
    pass


# ── Helpers ──────────────────────────────────────────────────────────────


async def _run(
    cmd: list[str], timeout: float = 30.0, cwd: Optional[str] = None
) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def _tail(text: str, limit: int = MAX_OUTPUT) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return f"[truncated, last {limit} of {len(text)} chars]\n" + text[-limit:]


def _sq(s: str) -> str:
    return "'" + s.replace("'", "'\\''") + "'"


_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _validate_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ValueError(f"Invalid sprite name: {name!r}")
    return name


def session_name(name: str) -> str:
    return SESSION_PREFIX + name


def ssh_alias(name: str) -> str:
    return SSH_ALIAS_PREFIX + name


def _read_int(path: str) -> Optional[int]:
    try:
        with open(path) as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


def _write_atomic(path: str, text: str) -> None:
    """Write a small state file atomically (tempfile + fsync + os.replace)."""
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    fd = tempfile.NamedTemporaryFile("w", dir=directory, delete=False, suffix=".tmp")
    try:
        fd.write(text)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        os.replace(fd.name, path)
    except BaseException:
        fd.close()
        try:
            os.unlink(fd.name)
        except OSError:
            pass
        raise


def _unlink(path: str) -> bool:
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False


def _pid_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # Exited children of this process linger as zombies until reaped.
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        return True
    return reaped == 0


def _port_listening(port: int, host: str = "localhost", timeout: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _signal_pid(pid: int, sig: int) -> None:
    """Signal a detached process, and its whole group when it leads one."""
    try:
        if os.getpgid(pid) == pid and pid != os.getpgrp():
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        pass


async def _terminate_pid(pid: int, timeout: Optional[float] = None) -> bool:
    timeout = timeout or KILL_TIMEOUT
    if not _pid_alive(pid):
        return True
    _signal_pid(pid, signal.SIGTERM)
    if await wait_until(lambda: not _pid_alive(pid), timeout, 0.1):
        return True
    log.warning(f"pid {pid} ignored SIGTERM for {timeout:.0f}s, sending SIGKILL")
    _signal_pid(pid, signal.SIGKILL)
    return await wait_until(lambda: not _pid_alive(pid), timeout, 0.1)


def _spawn_detached(cmd: list[str], log_path: str, mode: str = "ab") -> subprocess.Popen:
    """Start a process that outlives this one, output going to ``log_path``."""
    os.makedirs(os.path.dirname(log_path), exist_ok=True)
    with open(log_path, mode) as log_handle:
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            close_fds=True,
        )


async def wait_until(
    predicate: Callable, timeout: float, interval: float = 0.5
) -> bool:
    """
    Poll ``predicate`` until it returns something truthy or ``timeout`` passes.

    The predicate may be a plain or an async callable and is always evaluated
    once more at the deadline.  Exceptions it raises propagate immediately,
    which is how callers fail fast.  Returns False on timeout.
    """
    deadline = time.monotonic() + timeout
    while True:
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))


# ── Resource identity ────────────────────────────────────────────────────


@dataclass
class ResolvedTarget:
    name: str
    remote_dir: str
    local_dir: Optional[str] = None
    repo: Optional[str] = None
    org: Optional[str] = None


_SSH_REMOTE_RE = re.compile(r"git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$")
_HTTPS_REMOTE_RE = re.compile(r"https?://github\.com/([^/]+)/([^/]+?)(?:\.git)?$")


def parse_github_url(url: str) -> Optional[str]:
    for pattern in (_SSH_REMOTE_RE, _HTTPS_REMOTE_RE):
        m = pattern.search(url.strip())
        if m:
            return f"{m.group(1)}/{m.group(2)}"
    return None


def sanitize_name(name: str) -> str:
    return re.sub(r"[ ._:]", "-", name.lower())


def _repo_target(owner_repo: str, local_dir: Optional[str] = None) -> ResolvedTarget:
    owner, _, repo = owner_repo.partition("/")
    if not owner or not repo or "/" in repo:
        raise ValueError(f"Invalid repo {owner_repo!r}: expected owner/repo")
    return ResolvedTarget(
        name=_validate_name(f"gh-{owner}--{repo}"),
        remote_dir=f"{DEFAULT_REMOTE_HOME}/{repo}",
        local_dir=local_dir,
        repo=owner_repo,
    )


async def _resolve_path(path: str) -> ResolvedTarget:
    local_dir = os.path.abspath(os.path.expanduser(path))
    basename = os.path.basename(local_dir)
    remote_dir = f"{DEFAULT_REMOTE_HOME}/{basename}"

    # A .sprite file pins the directory to a named sprite
    try:
        with open(os.path.join(local_dir, ".sprite")) as f:
            pinned = json.load(f)
    except FileNotFoundError:
        pinned = None
    except (OSError, json.JSONDecodeError) as e:
        log.warning(f"Ignoring unreadable .sprite file in {local_dir}: {e}")
        pinned = None
    if isinstance(pinned, dict) and pinned.get("sprite"):
        return ResolvedTarget(
            name=_validate_name(pinned["sprite"]),
            remote_dir=remote_dir,
            local_dir=local_dir,
            org=pinned.get("organization") or None,
        )

    try:
        code, out, _ = await _run(
            ["git", "config", "--get", "remote.origin.url"], timeout=5, cwd=local_dir
        )
    except (OSError, asyncio.TimeoutError) as e:
        log.debug(f"git remote lookup failed in {local_dir}: {e}")
        code, out = 1, ""
    repo = parse_github_url(out) if code == 0 else None
    if repo:
        return _repo_target(repo, local_dir=local_dir)

    return ResolvedTarget(
        name=_validate_name(f"local-{sanitize_name(basename)}"),
        remote_dir=remote_dir,
        local_dir=local_dir,
    )


async def resolve_target(target: str = ".") -> ResolvedTarget:
    """
    Map a CLI target onto a sprite.

    ``.`` or a path: a ``.sprite`` file wins, then the GitHub origin remote,
    then the directory name.  ``owner/repo``: the GitHub sprite for that repo.
    Anything else is taken as a sprite name.
    """
    if target in (".", "~") or target.startswith(("/", "./", "../", "~/")):
        return await _resolve_path(target)
    if "/" in target:
        return _repo_target(target)
    return ResolvedTarget(name=_validate_name(target), remote_dir=DEFAULT_REMOTE_HOME)


# ── Ignore rules ─────────────────────────────────────────────────────────


def convert_gitignore_pattern(pattern: str, rel_dir: str = "", literal: bool = False) -> str:
    """Rewrite one .gitignore line as a sync ignore relative to the root.

    ``literal`` patterns came from a backslash-escaped ``#`` or ``!`` line and never
    negate; a leading ``!`` left at the root is escaped again.
    """
    negated = not literal and pattern.startswith("!")
    if negated:
        pattern = pattern[1:]
    pattern = pattern.strip("/")
    if not pattern:
        return ""
    if rel_dir and rel_dir != ".":
        pattern = f"{rel_dir}/{pattern}"
    if negated:
        return "!" + pattern
    if literal and pattern.startswith("!"):
        return "\\" + pattern
    return pattern


def parse_gitignore_file(path: str, rel_dir: str = "") -> list[str]:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError as e:
        log.debug(f"Skipping unreadable ignore file {path}: {e}")
        return []

    patterns = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith(("\\#", "\\!")):
            pattern = convert_gitignore_pattern(line[1:], rel_dir, literal=True)
        else:
            pattern = convert_gitignore_pattern(line, rel_dir)
        if pattern:
            patterns.append(pattern)
    return patterns


def deduplicate_patterns(patterns) -> list[str]:
    seen: set[str] = set()
    result = []
    for p in patterns:
        if p not in seen:
            seen.add(p)
            result.append(p)
    return result


def _under_version_control(root: str) -> bool:
    # .git is a directory in a checkout and a file in worktrees/submodules
    return os.path.exists(os.path.join(root, VCS_DIR))


def collect_ignore_patterns(root: str) -> list[str]:
    """
    Build the ordered ignore list handed to ``mutagen sync create``.

    Baseline patterns come first, then the root ``.gitignore``, then nested
    ones prefixed with their directory, so a nested negation always lands
    after the exclude it overrides (mutagen is last-match-wins).  ``!.git``
    is always last: branch state has to reach the sandbox.
    """
    patterns = list(DEFAULT_IGNORES)
    if _under_version_control(root):
        prune = set(DEFAULT_IGNORES) | {VCS_DIR}
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in prune)
            if IGNORE_FILE not in filenames:
                continue
            rel_dir = os.path.relpath(dirpath, root)
            rel_dir = "" if rel_dir == "." else rel_dir.replace(os.sep, "/")
            patterns.extend(
                parse_gitignore_file(os.path.join(dirpath, IGNORE_FILE), rel_dir)
            )
    else:
        patterns.extend(FALLBACK_IGNORES)

    reinclude_vcs = "!" + VCS_DIR
    result = deduplicate_patterns(p for p in patterns if p != reinclude_vcs)
    result.append(reinclude_vcs)
    return result


# ── Port allocation ──────────────────────────────────────────────────────


def base_port(name: str) -> int:
    """Deterministic tunnel port for a sprite (crc32, stable across runs)."""
    return zlib.crc32(name.encode()) % (PORT_MAX - PORT_MIN) + PORT_MIN


def allocate_port(
    name: str, preferred: Optional[int] = None, window: Optional[int] = None
) -> int:
    """
    Pick the tunnel port for ``name``.

    A previously recorded port is reused while it is free, so every client
    converges on the port that was actually chosen last time.  Otherwise
    probe linearly from the hashed base port, skipping live listeners.
    """
    window = window or PORT_PROBE_WINDOW
    if preferred and not _port_listening(preferred):
        return preferred

    base = base_port(name)
    span = PORT_MAX - PORT_MIN
    for offset in range(window):
        port = PORT_MIN + (base - PORT_MIN + offset) % span
        if port == preferred:
            continue
        if not _port_listening(port):
            if port != base:
                log.info(f"Port {base} busy for '{name}', using {port}")
            return port
    raise PortUnavailableError(
        f"No free port for '{name}' in {window} ports starting at {base}"
    )


# ── Session registry ─────────────────────────────────────────────────────


class SessionRegistry:
    """
    Per-sprite coordination directory shared by every client process::

        <root>/<name>/port        local port of the live tunnel
        <root>/<name>/proxy.pid   pid of the tunnel process
        <root>/<name>/<pid>.user  one file per client depending on it

    The set of ``*.user`` files is the reference count.  Everything is
    re-validated on read: a crashed client or a recycled pid never keeps
    infrastructure alive.
    """

    USER_SUFFIX = ".user"
    PORT_FILE = "port"
    PID_FILE = "proxy.pid"

    def __init__(self, root: Optional[str] = None):
        self.root = root or REGISTRY_DIR

    def path(self, name: str) -> str:
        return os.path.join(self.root, _validate_name(name))

    def _file(self, name: str, filename: str) -> str:
        return os.path.join(self.path(name), filename)

    def names(self) -> list[str]:
        try:
            entries = os.listdir(self.root)
        except FileNotFoundError:
            return []
        return sorted(e for e in entries if os.path.isdir(os.path.join(self.root, e)))

    # ── References ───────────────────────────────────────────────────

    def register(self, name: str, pid: int) -> None:
        _write_atomic(self._file(name, f"{pid}{self.USER_SUFFIX}"), f"{pid}\n")
        log.debug(f"Registered client {pid} for '{name}'")

    def unregister(self, name: str, pid: int) -> bool:
        """Drop this client's reference; True when no live referent remains."""
        _unlink(self._file(name, f"{pid}{self.USER_SUFFIX}"))
        remaining = self.referents(name)
        log.debug(f"Unregistered client {pid} for '{name}' ({len(remaining)} left)")
        return not remaining

    def referents(self, name: str) -> list[int]:
        """Live client pids; stale reference files are pruned on the way."""
        directory = self.path(name)
        try:
            entries = sorted(os.listdir(directory))
        except FileNotFoundError:
            return []

        live = []
        for entry in entries:
            if not entry.endswith(self.USER_SUFFIX):
                continue
            ref_file = os.path.join(directory, entry)
            pid = _read_int(ref_file)
            if pid is not None and _pid_alive(pid):
                live.append(pid)
                continue
            log.info(f"Pruning stale client reference {entry} for '{name}'")
            _unlink(ref_file)
        return live

    # ── Tunnel record ────────────────────────────────────────────────

    def recorded_port(self, name: str) -> Optional[int]:
        return _read_int(self._file(name, self.PORT_FILE))

    def recorded_proxy_pid(self, name: str) -> Optional[int]:
        return _read_int(self._file(name, self.PID_FILE))

    def query_active(self, name: str) -> Optional[tuple[int, int]]:
        """(port, proxy_pid) only while the pid is alive and the port accepts."""
        port = self.recorded_port(name)
        pid = self.recorded_proxy_pid(name)
        if port is None or pid is None:
            return None
        if not _pid_alive(pid):
            log.debug(f"Recorded tunnel pid {pid} for '{name}' is gone")
            return None
        if not _port_listening(port):
            log.debug(f"Recorded tunnel port {port} for '{name}' is not listening")
            return None
        return port, pid

    def publish(self, name: str, port: int, proxy_pid: int) -> None:
        _write_atomic(self._file(name, self.PID_FILE), f"{proxy_pid}\n")
        _write_atomic(self._file(name, self.PORT_FILE), f"{port}\n")
        log.info(f"Published tunnel for '{name}': port {port}, pid {proxy_pid}")

    def clear_proxy(self, name: str) -> None:
        """Forget the tunnel pid; the port stays recorded as the next preference."""
        _unlink(self._file(name, self.PID_FILE))

    def destroy(self, name: str) -> None:
        try:
            shutil.rmtree(self.path(name))
        except FileNotFoundError:
            return
        log.info(f"Removed registry for '{name}'")


# ── Readiness cache ──────────────────────────────────────────────────────


class ReadinessCache:
    """Host-local marker meaning "provisioning for this sprite is done"."""

    def __init__(self, root: Optional[str] = None, config_path: Optional[str] = None):
        self.root = root or READY_DIR
        self.config_path = config_path or SETUP_CONF

    def marker(self, name: str) -> str:
        return os.path.join(self.root, f"{_validate_name(name)}.ready")

    def is_ready(self, name: str) -> bool:
        try:
            marked = os.path.getmtime(self.marker(name))
        except OSError:
            return False
        try:
            changed = os.path.getmtime(self.config_path)
        except OSError:
            return True
        return changed <= marked

    def mark_ready(self, name: str) -> None:
        marker = self.marker(name)
        os.makedirs(self.root, exist_ok=True)
        with open(marker, "a"):
            pass
        os.utime(marker, None)

    def invalidate(self, name: str) -> None:
        if _unlink(self.marker(name)):
            log.info(f"Readiness marker cleared for '{name}'")


# ── Sprite control plane ─────────────────────────────────────────────────


class SpriteClient:
    """Thin wrapper around the ``sprite`` CLI."""

    def __init__(self, org: Optional[str] = None, binary: Optional[str] = None):
        self.org = org
        self.binary = binary or SPRITE_BINARY

    def _cmd(self, sub: list[str], name: Optional[str] = None) -> list[str]:
        cmd = [self.binary, *sub]
        if self.org:
            cmd.extend(["-o", self.org])
        if name:
            cmd.extend(["-s", name])
        return cmd

    async def list_names(self, attempts: Optional[int] = None) -> set[str]:
        """Names of the account's sprites, retrying transient API failures."""
        attempts = attempts or WAKE_ATTEMPTS
        cmd = self._cmd(["api"]) + ["/sprites"]
        for attempt in range(attempts):
            try:
                code, out, err = await _run(cmd, timeout=30)
            except asyncio.TimeoutError:
                code, out, err = -1, "", "timed out"
            except OSError as e:
                raise SandboxUnavailableError(f"Cannot run {self.binary}: {e}") from e
            if code == 0:
                break
            log.debug(f"Listing sprites, attempt {attempt + 1} failed: {(err or out).strip()}")
            if attempt + 1 < attempts:
                await asyncio.sleep((attempt + 1) * WAKE_BACKOFF)
        else:
            raise SandboxUnavailableError(
                f"Listing sprites failed after {attempts} attempts: {_tail(err or out)}"
            )
        try:
            payload = json.loads(out)
        except json.JSONDecodeError as e:
            raise SandboxUnavailableError(f"Unparseable sprite list: {e}") from e
        sprites = payload.get("sprites", []) if isinstance(payload, dict) else []
        return {s["name"] for s in sprites if isinstance(s, dict) and s.get("name")}

    async def exists(self, name: str) -> bool:
        return name in await self.list_names()

    async def create(self, name: str) -> None:
        cmd = self._cmd(["create", "-skip-console"]) + [name]
        try:
            code, out, err = await _run(cmd, timeout=180)
        except asyncio.TimeoutError as e:
            raise SandboxUnavailableError(f"Creating sprite '{name}' timed out") from e
        except OSError as e:
            raise SandboxUnavailableError(f"Cannot run {self.binary}: {e}") from e
        if code != 0:
            raise SandboxUnavailableError(
                f"Creating sprite '{name}' failed: {_tail(err or out)}"
            )
        log.info(f"Created sprite '{name}'")

    def exec_args(
        self,
        name: str,
        command: list[str],
        tty: bool = False,
        workdir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        files: Optional[dict[str, str]] = None,
    ) -> list[str]:
        cmd = self._cmd(["exec"], name)
        if tty:
            cmd.append("-tty")
        if workdir:
            cmd.extend(["-dir", workdir])
        if env:
            cmd.extend(["-env", ",".join(f"{k}={v}" for k, v in env.items())])
        for local, remote in (files or {}).items():
            cmd.extend(["-file", f"{local}:{remote}"])
        cmd.extend(command)
        return cmd

    async def exec(
        self, name: str, command: list[str], timeout: float = 60.0, **kwargs
    ) -> tuple[int, str, str]:
        return await _run(self.exec_args(name, command, **kwargs), timeout=timeout)

    def proxy_args(self, name: str, port: int) -> list[str]:
        return self._cmd(["proxy"], name) + [f"{port}:{REMOTE_SSH_PORT}"]

    async def list_sessions(self, name: str) -> list[tuple[str, bool]]:
        """tmux sessions on the sprite as ``(name, attached)`` pairs."""
        command = ["tmux", "list-sessions", "-F", "#{session_name}\t#{session_attached}"]
        try:
            code, out, err = await self.exec(name, command, timeout=30)
        except asyncio.TimeoutError as e:
            raise SandboxUnavailableError(f"Listing sessions on '{name}' timed out") from e
        except OSError as e:
            raise SandboxUnavailableError(f"Cannot run {self.binary}: {e}") from e
        if code != 0:
            detail = (err or out).strip()
            if "no server running" in detail or "error connecting" in detail:
                return []
            raise SpriteSyncError(f"Listing sessions on '{name}' failed: {_tail(detail)}")
        sessions = []
        for line in out.splitlines():
            session, _, attached = line.partition("\t")
            if session.strip():
                sessions.append((session.strip(), attached.strip() not in ("", "0")))
        return sessions

    async def wake(self, name: str, attempts: Optional[int] = None) -> None:
        """Run a trivial command until the sprite answers (warm/cold sprites)."""
        attempts = attempts or WAKE_ATTEMPTS
        last = ""
        for attempt in range(attempts):
            try:
                code, out, err = await self.exec(name, ["echo", "ready"], timeout=30)
            except asyncio.TimeoutError:
                code, out, err = -1, "", "timed out"
            except OSError as e:
                raise SandboxUnavailableError(f"Cannot run {self.binary}: {e}") from e
            if code == 0:
                log.info(f"Sprite '{name}' is awake")
                return
            last = (err or out).strip()
            log.debug(f"Wake attempt {attempt + 1} for '{name}' failed: {last}")
            if attempt + 1 < attempts:
                await asyncio.sleep((attempt + 1) * WAKE_BACKOFF)
        raise SandboxUnavailableError(
            f"Sprite '{name}' did not respond after {attempts} attempts: {_tail(last)}"
        )


# ── Tunnel (proxy) supervision ───────────────────────────────────────────


@dataclass
class ProxyHandle:
    name: str
    port: int
    pid: int
    log_path: str
    started_at: float = field(default_factory=time.time)
    _proc: Optional[subprocess.Popen] = field(default=None, repr=False)

    def alive(self) -> bool:
        if self._proc is not None:
            return self._proc.poll() is None
        return _pid_alive(self.pid)

    def listening(self) -> bool:
        return _port_listening(self.port)

    def output(self) -> str:
        try:
            with open(self.log_path, errors="replace") as f:
                return _tail(f.read())
        except OSError:
            return ""

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """True once the port accepts; False if the process died or time ran out."""
        await wait_until(
            lambda: self.listening() or not self.alive(),
            timeout or PROXY_READY_TIMEOUT,
            PROXY_POLL_INTERVAL,
        )
        return self.alive() and self.listening()

    async def kill(self, timeout: Optional[float] = None) -> bool:
        return await _terminate_pid(self.pid, timeout)


class ProxySupervisor:
    """Starts, health-checks and reaps ``sprite proxy`` tunnels."""

    def __init__(self, sprites: SpriteClient, registry: SessionRegistry):
        self.sprites = sprites
        self.registry = registry

    def signature(self, name: str) -> str:
        """Extended regex matching this sprite's tunnel command line (pgrep -f)."""
        escaped = _validate_name(name).replace(".", "\\.")
        return f"proxy( -o [^ ]+)? -s {escaped} [0-9]+:{REMOTE_SSH_PORT}( |$)"

    async def find_orphans(self, name: str) -> list[int]:
        try:
            code, out, _ = await _run(["pgrep", "-f", self.signature(name)], timeout=5)
        except (OSError, asyncio.TimeoutError) as e:
            log.debug(f"Orphan search unavailable: {e}")
            return []
        if code != 0:
            return []
        own = os.getpid()
        return [int(t) for t in out.split() if t.isdigit() and int(t) != own]

    async def reap_orphans(self, name: str) -> list[int]:
        """Kill tunnels for ``name`` other than the published, validated one."""
        active = self.registry.query_active(name)
        published = active[1] if active else None
        killed = []
        for pid in await self.find_orphans(name):
            if pid == published:
                continue
            log.warning(f"Killing orphaned tunnel for '{name}' (pid {pid})")
            await _terminate_pid(pid)
            killed.append(pid)
        return killed

    async def start(self, name: str, port: Optional[int] = None) -> ProxyHandle:
        """
        Start a detached tunnel and block until it listens.

        Orphans from earlier crashed clients are killed first.  On success the
        port and pid are published; on failure the process is killed, its
        output is raised in the ProxyError and nothing is published.  A live
        tunnel published by another client is adopted instead of replaced.
        """
        existing = self._adopt(name)
        if existing:
            return existing
        await self.reap_orphans(name)
        if port is None:
            port = allocate_port(name, preferred=self.registry.recorded_port(name))

        cmd = self.sprites.proxy_args(name, port)
        log_path = os.path.join(LOG_DIR, f"{name}-proxy.log")
        log.info(f"Starting tunnel for '{name}': localhost:{port} -> :{REMOTE_SSH_PORT}")
        try:
            proc = _spawn_detached(cmd, log_path, mode="wb")
        except OSError as e:
            raise ProxyError(f"Could not start tunnel for '{name}': {e}") from e

        handle = ProxyHandle(name=name, port=port, pid=proc.pid, log_path=log_path, _proc=proc)
        try:
            ready = await handle.wait_ready()
        except asyncio.CancelledError:
            _signal_pid(handle.pid, signal.SIGTERM)
            raise

        if not ready:
            died = not handle.alive()
            await handle.kill()
            detail = handle.output() or (
                "process exited" if died else f"not listening after {PROXY_READY_TIMEOUT:.0f}s"
            )
            raise ProxyError(f"Tunnel for '{name}' failed (port {port}): {detail}")

        # Another client may have published while this tunnel was coming up.
        existing = self._adopt(name)
        if existing:
            await handle.kill()
            return existing

        self.registry.publish(name, port, handle.pid)
        return handle

    def _adopt(self, name: str) -> Optional[ProxyHandle]:
        active = self.registry.query_active(name)
        if not active:
            return None
        port, pid = active
        log.info(f"Using tunnel already published for '{name}' (port {port}, pid {pid})")
        return ProxyHandle(
            name=name, port=port, pid=pid, log_path=os.path.join(LOG_DIR, f"{name}-proxy.log")
        )

    async def stop(self, name: str) -> None:
        """Kill the recorded tunnel (if still valid) and any orphans."""
        active = self.registry.query_active(name)
        if active:
            port, pid = active
            log.info(f"Stopping tunnel for '{name}' (port {port}, pid {pid})")
            await _terminate_pid(pid)
        await self.reap_orphans(name)
        self.registry.clear_proxy(name)


# ── SSH transport config ─────────────────────────────────────────────────

_SSH_BLOCK = """\
# sprite-sync: {alias}
Host {alias}
  HostName localhost
  Port {port}
  User sprite
  StrictHostKeyChecking no
  UserKnownHostsFile /dev/null
  LogLevel ERROR
# sprite-sync-end: {alias}
"""


def _strip_ssh_block(text: str, alias: str) -> str:
    start, end = f"# sprite-sync: {alias}", f"# sprite-sync-end: {alias}"
    kept, inside = [], False
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if stripped == start:
            inside = True
            continue
        if stripped == end:
            inside = False
            continue
        if not inside:
            kept.append(line)
    return "".join(kept)


def _read_ssh_config(path: str) -> str:
    try:
        with open(path) as f:
            return f.read()
    except FileNotFoundError:
        return ""


def write_ssh_config(name: str, port: int, path: Optional[str] = None) -> None:
    """Point the mutagen host alias for ``name`` at localhost:``port``."""
    path = path or SSH_CONFIG
    alias = ssh_alias(name)
    text = _strip_ssh_block(_read_ssh_config(path), alias)
    if text and not text.endswith("\n"):
        text += "\n"
    os.makedirs(os.path.dirname(path), mode=0o700, exist_ok=True)
    _write_atomic(path, text + _SSH_BLOCK.format(alias=alias, port=port))


def remove_ssh_config(name: str, path: Optional[str] = None) -> bool:
    path = path or SSH_CONFIG
    text = _read_ssh_config(path)
    stripped = _strip_ssh_block(text, ssh_alias(name))
    if stripped == text:
        return False
    _write_atomic(path, stripped)
    return True


# ── Sync engine (mutagen) ────────────────────────────────────────────────


@dataclass
class SyncStatus:
    session: str
    state: str = "absent"  # absent|initializing|watching|conflicted|error
    identifier: str = ""
    alpha_connected: bool = False
    beta_connected: bool = False
    conflicts: int = 0
    conflict_paths: list[str] = field(default_factory=list)
    last_error: str = ""

    @property
    def usable(self) -> bool:
        return self.state in ("watching", "conflicted")


_STATUS_WORDS = [
    ("watching", "watching"),
    ("halted", "error"),
    ("scanning", "initializing"),
    ("staging", "initializing"),
    ("transitioning", "initializing"),
    ("reconciling", "initializing"),
    ("saving", "initializing"),
    ("connecting", "initializing"),
    ("waiting", "initializing"),
]

_CONFLICT_HEADER_RE = re.compile(r"^Conflicts:\s*(\d+)?\s*$", re.IGNORECASE)
_CONFLICT_SIDE_RE = re.compile(r"^\((?:alpha|beta|α|β)\)\s*", re.IGNORECASE)
_CONFLICT_KIND_RE = re.compile(r"\s+\([^()]*\)$")


def _normalize_engine_status(text: str) -> str:
    lowered = text.lower()
    for word, state in _STATUS_WORDS:
        if word in lowered:
            return state
    return "initializing"


def parse_sync_status(session: str, output: str) -> SyncStatus:
    """
    Parse ``mutagen sync list --long`` output for one session.

    ``Conflicts: N`` sets the count; indented lines under a ``Conflicts:``
    header are the conflicted paths.  No count line means zero conflicts
    unless paths are listed.
    """
    status = SyncStatus(session=session)
    seen_status = False
    count: Optional[int] = None
    paths: list[str] = []
    in_conflicts = False
    connected_seen = 0

    for raw in output.splitlines():
        line = raw.strip()
        if in_conflicts:
            if line and raw[:1] in (" ", "\t"):
                path = _CONFLICT_KIND_RE.sub("", _CONFLICT_SIDE_RE.sub("", line))
                if path and path not in paths:
                    paths.append(path)
                continue
            in_conflicts = False

        m = _CONFLICT_HEADER_RE.match(line)
        if m:
            if m.group(1) is not None:
                count = int(m.group(1))
            in_conflicts = True
        elif line.startswith("Identifier:"):
            status.identifier = line.partition(":")[2].strip()
        elif line.startswith("Status:"):
            status.state = _normalize_engine_status(line.partition(":")[2])
            seen_status = True
        elif line.startswith("Connected:"):
            connected = line.partition(":")[2].strip().lower() == "yes"
            if connected_seen == 0:
                status.alpha_connected = connected
            else:
                status.beta_connected = connected
            connected_seen += 1
        elif line.startswith("Last error:"):
            status.last_error = line.partition(":")[2].strip()

    status.conflict_paths = paths
    status.conflicts = count if count is not None else len(paths)

    if not status.identifier and not seen_status:
        status.state = "absent"
    elif status.last_error and status.state != "watching":
        status.state = "error"
    elif status.state == "watching" and status.conflicts:
        status.state = "conflicted"
    return status


class SyncEngine:
    """Drives the external ``mutagen`` sync engine by session name."""

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary or MUTAGEN_BINARY

    async def status(self, name: str) -> SyncStatus:
        session = session_name(name)
        try:
            code, out, _ = await _run(
                [self.binary, "sync", "list", "--long", session], timeout=15
            )
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"Could not query sync session {session}: {e}")
            return SyncStatus(session=session)
        if code != 0:
            return SyncStatus(session=session)
        return parse_sync_status(session, out)

    async def exists(self, name: str) -> bool:
        return (await self.status(name)).state != "absent"

    async def create(
        self,
        name: str,
        local_dir: str,
        remote_dir: str,
        port: int,
        ignores: list[str],
        timeout: Optional[float] = None,
    ) -> SyncStatus:
        """
        (Re)create the session in two-way-safe mode and wait for it to settle.

        Two-way-safe flags divergent edits as conflicts instead of picking a
        side; a recreated session has no merge baseline and would otherwise
        overwrite unsynced work in the sandbox.
        """
        session = session_name(name)
        if await self.exists(name):
            log.info(f"Terminating stale sync session {session}")
            await self.terminate(name)

        write_ssh_config(name, port)

        cmd = [
            self.binary,
            "sync",
            "create",
            "--name",
            session,
            "--sync-mode",
            "two-way-safe",
        ]
        for pattern in ignores:
            cmd.extend(["--ignore", pattern])
        cmd.extend([local_dir, f"{ssh_alias(name)}:{remote_dir}"])

        code, out, err = await _run(cmd, timeout=SYNC_CREATE_TIMEOUT)
        if code != 0:
            raise SyncEngineError(f"Creating sync session {session} failed: {_tail(err or out)}")
        log.info(f"Created sync session {session}: {local_dir} <-> {name}:{remote_dir}")
        return await self.wait_steady(name, timeout)

    async def wait_steady(self, name: str, timeout: Optional[float] = None) -> SyncStatus:
        """Poll until watching/conflicted; error fails fast, timeout is soft."""
        timeout = timeout or SYNC_READY_TIMEOUT
        latest = SyncStatus(session=session_name(name), state="initializing")

        async def settled() -> bool:
            nonlocal latest
            latest = await self.status(name)
            if latest.state == "error":
                raise SyncEngineError(
                    f"Sync session {latest.session} failed: {latest.last_error or 'halted'}"
                )
            return latest.usable

        if not await wait_until(settled, timeout, SYNC_POLL_INTERVAL):
            log.warning(
                f"Sync session {latest.session} still {latest.state} after "
                f"{timeout:.0f}s; continuing while it scans"
            )
        return latest

    async def probe(self, name: str, attempts: Optional[int] = None) -> bool:
        """Round-trip ``echo ok`` over ssh through the tunnel."""
        attempts = attempts or SSH_PROBE_ATTEMPTS
        cmd = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            "ConnectTimeout=5",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            ssh_alias(name),
            "echo",
            "ok",
        ]
        for attempt in range(attempts):
            try:
                code, out, err = await _run(cmd, timeout=15)
            except asyncio.TimeoutError:
                code, out, err = -1, "", "timed out"
            except OSError as e:
                log.warning(f"ssh unavailable: {e}")
                return False
            if code == 0 and "ok" in out:
                return True
            log.debug(f"ssh probe {attempt + 1}/{attempts} for '{name}': {err.strip()}")
            if attempt + 1 < attempts:
                await asyncio.sleep((attempt + 1) * SSH_PROBE_BACKOFF)
        return False

    async def recover(
        self,
        name: str,
        port: int,
        local_dir: str,
        remote_dir: str,
        ignores: list[str],
    ) -> SyncStatus:
        """
        Rebuild a lost session on top of an existing tunnel.

        A live tunnel pid says nothing about the sprite end, so reachability
        is proven first; TunnelStaleError tells the caller to start over.
        """
        write_ssh_config(name, port)
        if not await self.probe(name, attempts=RECOVER_PROBE_ATTEMPTS):
            raise TunnelStaleError(f"Tunnel for '{name}' on port {port} does not answer")
        log.info(f"Tunnel for '{name}' verified; recreating sync session")
        return await self.create(name, local_dir, remote_dir, port, ignores)

    async def conflicts(self, name: str) -> tuple[int, list[str]]:
        status = await self.status(name)
        return status.conflicts, status.conflict_paths[:CONFLICT_SAMPLE_LIMIT]

    async def _bounded(self, action: str, name: str, timeout: float) -> bool:
        session = session_name(name)
        try:
            code, out, err = await _run(
                [self.binary, "sync", action, session], timeout=timeout
            )
        except asyncio.TimeoutError:
            log.warning(f"mutagen sync {action} {session} hung for {timeout:.0f}s; abandoned")
            return False
        except OSError as e:
            log.warning(f"mutagen sync {action} {session}: {e}")
            return False
        if code != 0:
            log.info(f"mutagen sync {action} {session}: {(err or out).strip()}")
            return False
        return True

    async def terminate(self, name: str, timeout: Optional[float] = None) -> bool:
        return await self._bounded("terminate", name, timeout or TERMINATE_TIMEOUT)

    async def flush(self, name: str, timeout: Optional[float] = None) -> bool:
        return await self._bounded("flush", name, timeout or FLUSH_TIMEOUT)

    async def reset(self, name: str, timeout: Optional[float] = None) -> bool:
        return await self._bounded("reset", name, timeout or TERMINATE_TIMEOUT)


# ── Lifecycle coordination ───────────────────────────────────────────────


@dataclass
class SessionContext:
    """What one client invocation knows about its sprite; threaded explicitly."""

    name: str
    remote_dir: str
    local_dir: Optional[str] = None
    org: Optional[str] = None
    client_pid: int = field(default_factory=os.getpid)
    port: Optional[int] = None
    proxy_pid: Optional[int] = None
    joined: bool = False
    registered: bool = False
    sync_state: str = "inactive"
    sync_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @classmethod
    def from_target(cls, target: ResolvedTarget, org: Optional[str] = None):
        return cls(
            name=target.name,
            remote_dir=target.remote_dir,
            local_dir=target.local_dir,
            org=org or target.org,
        )


# Provisioning for the tunnel: (probe token, label, script).  {key} is quoted.
_SSHD_STEPS = [
    (
        "has-sshd",
        "install openssh-server",
        "if ! command -v sshd >/dev/null 2>&1; then "
        "sudo apt-get update -qq && sudo apt-get install -y -qq openssh-server; fi",
    ),
    (
        "has-key",
        "authorize ssh key",
        "mkdir -p ~/.ssh && chmod 700 ~/.ssh && echo {key} >> ~/.ssh/authorized_keys && "
        "sort -u ~/.ssh/authorized_keys -o ~/.ssh/authorized_keys && "
        "chmod 600 ~/.ssh/authorized_keys",
    ),
    (
        "sshd-running",
        "start sshd",
        "sudo mkdir -p /run/sshd; sudo systemctl start ssh 2>/dev/null || "
        "sudo service ssh start 2>/dev/null || sudo /usr/sbin/sshd",
    ),
]

_PROBE_SCRIPT = (
    "command -v sshd >/dev/null 2>&1 && echo has-sshd; "
    "grep -qxF {key} ~/.ssh/authorized_keys 2>/dev/null && echo has-key; "
    "pgrep -x sshd >/dev/null 2>&1 && echo sshd-running; true"
)

CONFLICT_HELP = (
    "Resolve by keeping one side (edit or delete the other copy), then run "
    "`sprite-sync flush`; or `sprite-sync reset` to accept the current state "
    "of both sides as the new baseline."
)


def _read_public_key() -> str:
    try:
        with open(SSH_PUBKEY) as f:
            key = f.read().strip()
    except OSError as e:
        raise ProvisionError(f"Cannot read SSH public key {SSH_PUBKEY}: {e}") from e
    if not key:
        raise ProvisionError(f"SSH public key {SSH_PUBKEY} is empty")
    return key


def _tmux_session_name(command: str) -> str:
    first = command.split()[0] if command.split() else "shell"
    return re.sub(r"[.:]", "-", os.path.basename(first))


class Coordinator:
    """
    Start/exit orchestration for one client process.

    Start: join a live tunnel+session cheaply, or wake/provision the sprite
    and build the tunnel and session.  Exit: drop this client's reference
    and, if it was the last, hand teardown to a detached grace watcher.
    """

    def __init__(
        self,
        sprites: SpriteClient,
        registry: Optional[SessionRegistry] = None,
        proxies: Optional[ProxySupervisor] = None,
        engine: Optional[SyncEngine] = None,
        readiness: Optional[ReadinessCache] = None,
        grace: Optional[float] = None,
    ):
        self.sprites = sprites
        self.registry = registry or SessionRegistry()
        self.proxies = proxies or ProxySupervisor(sprites, self.registry)
        self.engine = engine or SyncEngine()
        self.readiness = readiness or ReadinessCache()
        self.grace = GRACE_PERIOD if grace is None else grace

    # ── Start ────────────────────────────────────────────────────────

    def register(self, ctx: SessionContext) -> None:
        if not ctx.registered:
            self.registry.register(ctx.name, ctx.client_pid)
            ctx.registered = True

    async def start(
        self, ctx: SessionContext, sync: bool = True, background: bool = True
    ) -> SessionContext:
        want_sync = sync and bool(ctx.local_dir)

        active = self.registry.query_active(ctx.name)
        if active:
            ctx.port, ctx.proxy_pid = active
            self.register(ctx)
            ctx.joined = True
            if not want_sync or await self.engine.exists(ctx.name):
                ctx.sync_state = "shared"
                log.info(f"Joined live tunnel for '{ctx.name}' on port {ctx.port}")
                return ctx
            log.warning(f"Tunnel for '{ctx.name}' is up but its sync session is gone")
            await self._launch(ctx, self.recover(ctx), background)
            return ctx

        created = await self.ensure_sandbox(ctx)
        if want_sync:
            cold = created or not self.readiness.is_ready(ctx.name)
            try:
                await self.provision(ctx, cold=cold)
            except ProvisionError as e:
                log.warning(f"Sync disabled for '{ctx.name}': {e}")
                want_sync = False

        if not want_sync:
            self.register(ctx)
            return ctx
        if background:
            self.register(ctx)
            await self._launch(ctx, self.establish(ctx), background=True)
        else:
            await self._launch(ctx, self.establish(ctx), background=False)
            self.register(ctx)
        return ctx

    async def ensure_sandbox(self, ctx: SessionContext) -> bool:
        """Create the sprite if needed and wake it; True when newly created."""
        created = False
        if not await self.sprites.exists(ctx.name):
            log.info(f"Creating sprite '{ctx.name}'")
            await self.sprites.create(ctx.name)
            self.readiness.invalidate(ctx.name)
            created = True
        await self.sprites.wake(ctx.name)
        return created

    async def _remote_step(
        self, ctx: SessionContext, label: str, script: str, timeout: float
    ) -> tuple[int, str, str]:
        try:
            return await self.sprites.exec(ctx.name, ["sh", "-c", script], timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ProvisionError(f"{label} timed out on '{ctx.name}'") from e
        except OSError as e:
            raise ProvisionError(f"{label} could not run on '{ctx.name}': {e}") from e

    async def probe_remote_state(self, ctx: SessionContext, key: str) -> set[str]:
        code, out, _ = await self._remote_step(
            ctx, "Checking sshd state", _PROBE_SCRIPT.format(key=_sq(key)), timeout=30
        )
        return set(out.split()) if code == 0 else set()

    async def provision(self, ctx: SessionContext, cold: bool) -> None:
        """
        Get the sprite ready to accept the tunnel's ssh connections.

        Cold: run every step, then mark the sprite ready.  Warm: probe the
        sprite once and run only the steps that are not already satisfied.
        """
        key = _read_public_key()
        satisfied = set() if cold else await self.probe_remote_state(ctx, key)
        for token, label, script in _SSHD_STEPS:
            if token in satisfied:
                continue
            log.info(f"Provisioning '{ctx.name}': {label}")
            code, out, err = await self._remote_step(
                ctx, label, script.format(key=_sq(key)), timeout=300
            )
            if code != 0:
                raise ProvisionError(f"{label} failed on '{ctx.name}': {_tail(err or out)}")
        if cold:
            self.readiness.mark_ready(ctx.name)

    async def establish(self, ctx: SessionContext) -> SyncStatus:
        """Tunnel, reachability check, then a fresh sync session."""
        handle = await self.proxies.start(ctx.name)
        ctx.port, ctx.proxy_pid = handle.port, handle.pid
        write_ssh_config(ctx.name, handle.port)
        if not await self.engine.probe(ctx.name):
            await handle.kill()
            self.registry.clear_proxy(ctx.name)
            raise TunnelStaleError(f"No ssh response through localhost:{handle.port}")

        ignores = collect_ignore_patterns(ctx.local_dir)
        status = await self.engine.create(
            ctx.name, ctx.local_dir, ctx.remote_dir, handle.port, ignores
        )
        ctx.sync_state = status.state
        return status

    async def recover(self, ctx: SessionContext) -> SyncStatus:
        ignores = collect_ignore_patterns(ctx.local_dir)
        try:
            status = await self.engine.recover(
                ctx.name, ctx.port, ctx.local_dir, ctx.remote_dir, ignores
            )
        except TunnelStaleError as e:
            log.warning(f"{e}; rebuilding tunnel")
            await self.proxies.stop(ctx.name)
            return await self.establish(ctx)
        ctx.sync_state = status.state
        return status

    async def _launch(self, ctx: SessionContext, step, background: bool) -> None:
        if background:
            ctx.sync_task = asyncio.create_task(self._guarded(ctx, step))
        else:
            await self._guarded(ctx, step)

    async def _guarded(self, ctx: SessionContext, step) -> Optional[SyncStatus]:
        """Sync failures degrade to "sync inactive"; the sandbox stays usable."""
        try:
            status = await step
        except (SpriteSyncError, OSError, asyncio.TimeoutError) as e:
            ctx.sync_state = "inactive"
            log.warning(f"Sync for '{ctx.name}' inactive: {e}")
            return None
        if status.state == "conflicted":
            log.warning(f"Sync for '{ctx.name}' has {status.conflicts} conflict(s). {CONFLICT_HELP}")
        else:
            log.info(f"Sync for '{ctx.name}' is {status.state}")
        return status

    # ── Exit ─────────────────────────────────────────────────────────

    async def finalize(self, ctx: SessionContext) -> bool:
        """Release this client; True when it was the last and teardown was deferred."""
        task = ctx.sync_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        ctx.sync_task = None

        if not ctx.registered:
            return False
        last = self.registry.unregister(ctx.name, ctx.client_pid)
        ctx.registered = False
        if not last:
            log.info(f"Other clients still use '{ctx.name}'; leaving tunnel and sync up")
            return False
        self.spawn_grace_watcher(ctx.name, org=ctx.org)
        return True

    def spawn_grace_watcher(self, name: str, org: Optional[str] = None) -> int:
        cmd = [sys.executable, "-m", "sprite_sync"]
        if org:
            cmd.extend(["--org", org])
        cmd.extend(
            [
                "_grace-watch",
                name,
                "--grace",
                str(self.grace),
                "--registry-dir",
                self.registry.root,
            ]
        )
        proc = _spawn_detached(cmd, os.path.join(LOG_DIR, f"{name}.log"))
        log.info(f"Last client left '{name}'; teardown in {self.grace:.0f}s (watcher pid {proc.pid})")
        return proc.pid

    async def grace_watch(
        self, name: str, grace: Optional[float] = None, interval: Optional[float] = None
    ) -> bool:
        """
        Wait out the grace window, re-checking for returning clients each poll.

        Returns True if the window expired and everything was torn down.
        """
        grace = self.grace if grace is None else grace
        interval = interval or GRACE_POLL_INTERVAL
        if await wait_until(lambda: bool(self.registry.referents(name)), grace, interval):
            log.info(f"A client came back to '{name}'; keeping tunnel and sync")
            return False
        await self.teardown(name)
        return True

    async def teardown(self, name: str) -> None:
        log.info(f"Tearing down tunnel and sync for '{name}'")
        await self.engine.terminate(name)
        await self.proxies.stop(name)
        remove_ssh_config(name)
        if self.registry.referents(name):
            # A client registered mid-teardown; keep its reference, it will rebuild.
            log.warning(f"Client arrived during teardown of '{name}'; keeping registry")
            return
        self.registry.destroy(name)

    # ── Operations ───────────────────────────────────────────────────

    async def resync(self, ctx: SessionContext) -> str:
        """Flush, tear down, clean local state, relaunch in the background."""
        if not ctx.local_dir:
            raise SpriteSyncError(f"No local directory to sync for '{ctx.name}'")
        lines = [f"Resetting sync for {ctx.name}..."]
        if await self.engine.exists(ctx.name):
            if await self.engine.flush(ctx.name):
                lines.append("Flushed pending changes")
            else:
                lines.append("Flush did not complete; continuing")
            await self.engine.terminate(ctx.name)
        await self.proxies.stop(ctx.name)
        remove_ssh_config(ctx.name)
        self.readiness.invalidate(ctx.name)
        pid = self.relaunch(ctx)
        lines.append(f"Sync restarting in background (pid {pid})")
        return "\n".join(lines)

    def relaunch(self, ctx: SessionContext) -> int:
        cmd = [sys.executable, "-m", "sprite_sync"]
        if ctx.org:
            cmd.extend(["--org", ctx.org])
        cmd.extend(["_up", ctx.local_dir or ctx.name])
        proc = _spawn_detached(cmd, os.path.join(LOG_DIR, f"{ctx.name}.log"))
        return proc.pid

    async def status(self, name: str) -> dict:
        active = self.registry.query_active(name)
        sync = await self.engine.status(name)
        return {
            "name": name,
            "tunnel": {
                "port": self.registry.recorded_port(name),
                "pid": self.registry.recorded_proxy_pid(name),
                "alive": active is not None,
            },
            "sync": {
                "session": sync.session,
                "state": sync.state,
                "identifier": sync.identifier,
                "conflicts": sync.conflicts,
                "conflict_paths": sync.conflict_paths[:CONFLICT_SAMPLE_LIMIT],
                "last_error": sync.last_error,
            },
            "clients": len(self.registry.referents(name)),
            "ready": self.readiness.is_ready(name),
        }

    async def run_shell(
        self, ctx: SessionContext, command: str = "bash", session: Optional[str] = None
    ) -> int:
        """Attach to (or create) the named tmux session in the remote dir."""
        session = session or _tmux_session_name(command)
        remote = _sq(ctx.remote_dir)
        script = (
            f"mkdir -p {remote} && cd {remote} && "
            f"exec tmux new-session -A -s {_sq(session)} {command}"
        )
        proc = await asyncio.create_subprocess_exec(
            *self.sprites.exec_args(ctx.name, ["sh", "-c", script], tty=True)
        )
        try:
            return await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.terminate()
            raise


# ── Formatting ───────────────────────────────────────────────────────────


def format_conflicts(count: int, paths: list[str]) -> str:
    if not count:
        return "Conflicts: none"
    lines = [f"Conflicts: {count}"]
    lines.extend(f"  {p}" for p in paths)
    if count > len(paths):
        lines.append(f"  ... and {count - len(paths)} more")
    lines.append(CONFLICT_HELP)
    return "\n".join(lines)


def format_sessions(name: str, sessions: list[tuple[str, bool]]) -> str:
    if not sessions:
        return f"No active tmux sessions on {name}"
    lines = [f"tmux sessions on {name}:"]
    lines.extend(f"  {s} (attached)" if attached else f"  {s}" for s, attached in sessions)
    return "\n".join(lines)


def format_status(info: dict) -> str:
    tunnel, sync = info["tunnel"], info["sync"]
    if tunnel["alive"]:
        tunnel_line = f"localhost:{tunnel['port']} (pid {tunnel['pid']}, alive)"
    elif tunnel["pid"]:
        tunnel_line = f"down (stale pid {tunnel['pid']})"
    else:
        tunnel_line = "none"

    lines = [
        f"Sprite:   {info['name']}",
        f"Tunnel:   {tunnel_line}",
        f"Sync:     {sync['state']} ({sync['session']})",
    ]
    if sync["last_error"]:
        lines.append(f"Error:    {sync['last_error']}")
    lines.append(format_conflicts(sync["conflicts"], sync["conflict_paths"]))
    lines.append(f"Clients:  {info['clients']}")
    lines.append(f"Ready:    {'yes' if info['ready'] else 'no'}")
    return "\n".join(lines)


# ── MCP Server ───────────────────────────────────────────────────────────

mcp_server = FastMCP(
    "sprite-sync",
    instructions=(
        "Inspect and repair the two-way file sync between local checkouts and "
        "their sprite sandboxes. Use sync_status for tunnel, sync state, "
        "conflicts and connected clients; sync_conflicts to list conflicted "
        "paths; sync_resync to flush and rebuild a broken sync in the background; "
        "sprite_sessions to list tmux sessions running on the sprite. "
        "Targets are a local path, owner/repo, or a sprite name."
    ),
)


async def _coordinator_for(
    target: str, org: Optional[str] = None
) -> tuple[Coordinator, SessionContext]:
    resolved = await resolve_target(target)
    ctx = SessionContext.from_target(resolved, org=org)
    return Coordinator(SpriteClient(org=ctx.org)), ctx


@mcp_server.tool()
async def sync_status(target: str = ".") -> str:
    """
    Show tunnel liveness, sync state, conflict count and client count.

    Args:
        target: Local directory, owner/repo, or sprite name (default ".")
    """
    coordinator, ctx = await _coordinator_for(target)
    return format_status(await coordinator.status(ctx.name))


@mcp_server.tool()
async def sync_conflicts(target: str = ".") -> str:
    """
    List conflicted paths reported by the sync engine.

    Args:
        target: Local directory, owner/repo, or sprite name (default ".")
    """
    coordinator, ctx = await _coordinator_for(target)
    count, paths = await coordinator.engine.conflicts(ctx.name)
    return format_conflicts(count, paths)


@mcp_server.tool()
async def sprite_sessions(target: str = ".") -> str:
    """
    List the tmux sessions running on the sprite.

    Args:
        target: Local directory, owner/repo, or sprite name (default ".")
    """
    coordinator, ctx = await _coordinator_for(target)
    try:
        return format_sessions(ctx.name, await coordinator.sprites.list_sessions(ctx.name))
    except SpriteSyncError as e:
        return f"Error: {e}"


@mcp_server.tool()
async def sync_resync(target: str = ".") -> str:
    """
    Flush pending changes, tear down tunnel and sync, and rebuild them in the
    background. Returns immediately.

    Args:
        target: Local directory of the synced checkout (default ".")
    """
    coordinator, ctx = await _coordinator_for(target)
    try:
        return await coordinator.resync(ctx)
    except SpriteSyncError as e:
        return f"Error: {e}"


# ── CLI ──────────────────────────────────────────────────────────────────


def _install_exit_signals(task: asyncio.Task, interactive: bool = False) -> None:
    """Turn SIGINT/SIGTERM/SIGHUP into one cancellation so finalizers run.

    While an interactive shell runs, Ctrl-C belongs to the remote terminal.
    """
    loop = asyncio.get_running_loop()
    fired = False

    def on_signal(signame: str) -> None:
        nonlocal fired
        if fired:
            return
        fired = True
        log.info(f"Received {signame}; cleaning up")
        task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
        if interactive and sig == signal.SIGINT:
            loop.add_signal_handler(sig, lambda: None)
        else:
            loop.add_signal_handler(sig, on_signal, sig.name)


async def _cmd_connect(args) -> int:
    resolved = await resolve_target(args.target)
    ctx = SessionContext.from_target(resolved, org=args.org)
    coordinator = Coordinator(SpriteClient(org=ctx.org))
    task = asyncio.current_task()
    _install_exit_signals(task)

    print(f"Connecting to sprite: {ctx.name}")
    try:
        await coordinator.start(ctx, sync=not args.no_sync, background=not args.wait_sync)
        if ctx.joined:
            print(f"Joined existing tunnel on port {ctx.port}")
        elif ctx.sync_task is not None:
            print("Starting file sync in background...")
        _install_exit_signals(task, interactive=True)
        return await coordinator.run_shell(ctx, command=args.exec or "bash", session=args.name)
    except SpriteSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await coordinator.finalize(ctx)


async def _cmd_up(args) -> int:
    resolved = await resolve_target(args.target)
    ctx = SessionContext.from_target(resolved, org=args.org)
    coordinator = Coordinator(SpriteClient(org=ctx.org))
    _install_exit_signals(asyncio.current_task())
    try:
        await coordinator.start(ctx, sync=True, background=False)
        log.info(f"Relaunch for '{ctx.name}' finished: sync {ctx.sync_state}")
        return 0 if ctx.sync_state != "inactive" else 1
    except SpriteSyncError as e:
        log.error(f"Relaunch for '{ctx.name}' failed: {e}")
        return 1
    finally:
        await coordinator.finalize(ctx)


async def _cmd_grace_watch(args) -> int:
    registry = SessionRegistry(args.registry_dir)
    coordinator = Coordinator(SpriteClient(org=args.org), registry=registry, grace=args.grace)
    await coordinator.grace_watch(args.name)
    return 0


async def _cmd_status(args) -> int:
    coordinator, ctx = await _coordinator_for(args.target, org=args.org)
    print(format_status(await coordinator.status(ctx.name)))
    return 0


async def _cmd_resync(args) -> int:
    coordinator, ctx = await _coordinator_for(args.target, org=args.org)
    try:
        print(await coordinator.resync(ctx))
    except SpriteSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


async def _cmd_conflicts(args) -> int:
    coordinator, ctx = await _coordinator_for(args.target, org=args.org)
    count, paths = await coordinator.engine.conflicts(ctx.name)
    print(format_conflicts(count, paths))
    return 0


async def _cmd_sessions(args) -> int:
    coordinator, ctx = await _coordinator_for(args.target, org=args.org)
    try:
        sessions = await coordinator.sprites.list_sessions(ctx.name)
    except SpriteSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(format_sessions(ctx.name, sessions))
    return 0


async def _cmd_flush(args) -> int:
    coordinator, ctx = await _coordinator_for(args.target, org=args.org)
    if await coordinator.engine.flush(ctx.name):
        print(f"Flushed {session_name(ctx.name)}")
        return 0
    print(f"Flush of {session_name(ctx.name)} did not complete", file=sys.stderr)
    return 1


async def _cmd_reset(args) -> int:
    coordinator, ctx = await _coordinator_for(args.target, org=args.org)
    if await coordinator.engine.reset(ctx.name):
        print(f"Reset {session_name(ctx.name)}: current state is the new baseline")
        return 0
    print(f"Reset of {session_name(ctx.name)} failed", file=sys.stderr)
    return 1


_COMMANDS = {
    "connect": _cmd_connect,
    "status": _cmd_status,
    "resync": _cmd_resync,
    "conflicts": _cmd_conflicts,
    "sessions": _cmd_sessions,
    "flush": _cmd_flush,
    "reset": _cmd_reset,
    "_grace-watch": _cmd_grace_watch,
    "_up": _cmd_up,
}

_DETACHED_COMMANDS = {"_grace-watch", "_up"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sprite-sync",
        description="Work in a sprite sandbox with the local directory kept in two-way sync.",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("--org", default=None, help="sprite organization")
    parser.set_defaults(target=".", no_sync=False, wait_sync=False, name=None, exec=None)
    sub = parser.add_subparsers(
        dest="command", metavar="{connect,status,resync,conflicts,sessions,flush,reset,serve}"
    )

    p = sub.add_parser("connect", help="open a shell in the sprite (default)")
    p.add_argument("target", nargs="?", default=".")
    p.add_argument("--no-sync", action="store_true", help="disable file syncing")
    p.add_argument("--wait-sync", action="store_true", help="set up sync before the shell")
    p.add_argument("--name", default=None, help="tmux session name")
    p.add_argument("--exec", default=None, help="command to run instead of bash")

    for cmd, help_text in (
        ("status", "tunnel, sync and client status"),
        ("resync", "flush, tear down and restart sync in the background"),
        ("conflicts", "list sync conflicts"),
        ("sessions", "list tmux sessions on the sprite"),
        ("flush", "flush pending sync changes"),
        ("reset", "accept the current state as the sync baseline"),
    ):
        p = sub.add_parser(cmd, help=help_text)
        p.add_argument("target", nargs="?", default=".")

    sub.add_parser("serve", help="run the MCP server on stdio")

    p = sub.add_parser("_grace-watch")
    p.add_argument("name")
    p.add_argument("--grace", type=float, default=GRACE_PERIOD)
    p.add_argument("--registry-dir", default=None)

    p = sub.add_parser("_up")
    p.add_argument("target")
    return parser


def _setup_logging(verbosity: int, detached: bool = False) -> None:
    if detached or verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


# ── Entry point ──────────────────────────────────────────────────────────


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "connect"
    _setup_logging(args.verbose, detached=command in _DETACHED_COMMANDS)

    if command == "serve":
        mcp_server.run(transport="stdio")
        return 0
    try:
        return asyncio.run(_COMMANDS[command](args))
    except asyncio.CancelledError:
        return 130
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
