# host.py
# Boundary collaborators — everything that touches the host.
# Steps are assembled from these in catalog.py; the runner never calls them
# directly.

import logging
import os
import shutil
import socket
import stat
import subprocess
from pathlib import Path
from typing import Iterable, Sequence

import httpx

from hostprep.runner import ActionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1800  # package installs and model pulls are slow

# Where vendor installers drop binaries when they don't use /usr/local/bin.
ALTERNATE_BIN_DIRS = ("~/.local/bin", "~/.cargo/bin")


class CommandError(ActionError):
    """A host command exited non-zero, timed out, or could not be started."""

    def __init__(self, args: Sequence[str], returncode: int | None, stderr: str = "") -> None:
        cmd = " ".join(args)
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        if returncode is None:
            message = f"`{cmd}` could not run: {tail}"
        else:
            message = f"`{cmd}` exited {returncode}" + (f": {tail}" if tail else "")
        super().__init__("", message)
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr


# ---------------------------------------------------------------------------
# Processes
# ---------------------------------------------------------------------------


def run_command(
    args: Sequence[str],
    *,
    sudo: bool = False,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
    input: str | None = None,
) -> str:
    """Run a command and return its stdout. Raises CommandError on any failure."""
    argv = list(args)
    if sudo and os.geteuid() != 0:
        argv = ["sudo", "-E", *argv]

    full_env = None
    if env:
        full_env = {**os.environ, **env}

    logger.debug("Running: %s", " ".join(argv))
    try:
        result = subprocess.run(
            argv,
            cwd=cwd,
            env=full_env,
            input=input,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise CommandError(argv, None, str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(argv, None, f"timed out after {timeout}s") from exc

    if result.returncode != 0:
        logger.info("Command failed (%d): %s", result.returncode, " ".join(argv))
        raise CommandError(argv, result.returncode, result.stderr)
    return result.stdout


def _succeeds(args: Sequence[str]) -> bool:
    try:
        run_command(args, timeout=30)
    except CommandError:
        return False
    return True


# ---------------------------------------------------------------------------
# Binaries
# ---------------------------------------------------------------------------


def find_binary(name: str, extra_dirs: Iterable[str] = ALTERNATE_BIN_DIRS) -> Path | None:
    """
    Locate an executable on PATH, then in the alternate install directories.

    Vendor installers sometimes report success but put the binary somewhere
    that isn't on PATH yet.
    """
    found = shutil.which(name)
    if found:
        return Path(found)

    for directory in extra_dirs:
        candidate = Path(directory).expanduser() / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
    return None


def command_exists(name: str, extra_dirs: Iterable[str] = ()) -> bool:
    return find_binary(name, extra_dirs) is not None


def tool_version(args: Sequence[str]) -> str | None:
    """First line of ``<tool> --version`` style output, or None if it can't run."""
    try:
        output = run_command(args, timeout=30)
    except CommandError:
        return None
    lines = output.strip().splitlines()
    return lines[0].strip() if lines else None


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------


def package_installed(name: str) -> bool:
    try:
        status = run_command(["dpkg-query", "-W", "-f=${Status}", name], timeout=30)
    except CommandError:
        return False
    words = status.split()
    return bool(words) and words[-1] == "installed"


def missing_packages(names: Iterable[str]) -> list[str]:
    return [name for name in names if not package_installed(name)]


def apt_update() -> None:
    run_command(["apt-get", "update"], sudo=True, env={"DEBIAN_FRONTEND": "noninteractive"})


def apt_install(names: Iterable[str]) -> None:
    """Install whichever of ``names`` is missing. No-op if none are."""
    todo = missing_packages(names)
    if not todo:
        return
    logger.info("Installing: %s", " ".join(todo))
    run_command(
        ["apt-get", "install", "-y", *todo],
        sudo=True,
        env={"DEBIAN_FRONTEND": "noninteractive"},
    )


def run_external_installer(url: str, *, sudo: bool = False, timeout: float = 60) -> None:
    """Fetch a vendor install script and pipe it to sh."""
    try:
        response = httpx.get(url, follow_redirects=True, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise ActionError("", f"could not fetch installer {url}: {exc}") from exc

    run_command(["sh", "-s"], sudo=sudo, input=response.text)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def _systemctl(user: bool) -> list[str]:
    return ["systemctl", "--user"] if user else ["systemctl"]


def service_is_active(name: str, *, user: bool = False) -> bool:
    return _succeeds([*_systemctl(user), "is-active", "--quiet", name])


def enable_service(name: str, *, user: bool = False) -> None:
    run_command([*_systemctl(user), "enable", name], sudo=not user)


def start_service(name: str, *, user: bool = False, enable: bool = True) -> None:
    if enable:
        enable_service(name, user=user)
    run_command([*_systemctl(user), "start", name], sudo=not user)


def daemon_reload(*, user: bool = False) -> None:
    run_command([*_systemctl(user), "daemon-reload"], sudo=not user)


def unit_enabled(name: str, *, user: bool = False) -> bool:
    return _succeeds([*_systemctl(user), "is-enabled", "--quiet", name])


# ---------------------------------------------------------------------------
# Network probes
# ---------------------------------------------------------------------------


def tcp_port_in_use(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    """True if something accepts connections on host:port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        return sock.connect_ex((host, port)) == 0


def http_ok(url: str, timeout: float = 2.0) -> bool:
    try:
        response = httpx.get(url, timeout=timeout)
    except httpx.HTTPError as exc:
        logger.debug("GET %s failed: %s", url, exc)
        return False
    return response.status_code < 400


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def write_file(path: str | Path, content: str, *, executable: bool = False) -> Path:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    if executable:
        mode = path.stat().st_mode
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def file_matches(path: str | Path, content: str, *, executable: bool = False) -> bool:
    path = Path(path).expanduser()
    if not path.is_file():
        return False
    if executable and not os.access(path, os.X_OK):
        return False
    return path.read_text(encoding="utf-8") == content


def line_in_file(path: str | Path, line: str) -> bool:
    path = Path(path).expanduser()
    if not path.is_file():
        return False
    return line in path.read_text(encoding="utf-8").splitlines()


def append_line(path: str | Path, line: str) -> None:
    path = Path(path).expanduser()
    if line_in_file(path, line):
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(f"\n{line}\n")


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


def ollama_models() -> list[str]:
    """Model names reported by ``ollama list`` (header row dropped)."""
    output = run_command(["ollama", "list"], timeout=60)
    names = []
    for line in output.splitlines()[1:]:
        fields = line.split()
        if fields:
            names.append(fields[0])
    return names


def ollama_has_model(name: str) -> bool:
    """
    ``llama3.2:3b`` matches exactly; a bare ``llama3.2`` matches ``llama3.2:latest``.
    """
    wanted = name if ":" in name.rsplit("/", 1)[-1] else f"{name}:latest"
    try:
        return wanted in ollama_models()
    except CommandError:
        return False


def ollama_pull(name: str) -> None:
    run_command(["ollama", "pull", name], timeout=None)
