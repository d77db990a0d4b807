# catalog.py
# The concrete provisioning workflow, expressed as Steps.
#
# Order matters and is the only dependency mechanism: a runtime is always
# declared before anything that needs it.

from functools import partial
from pathlib import Path
from typing import Iterable, Sequence

import httpx

from hostprep import host
from hostprep.config import Settings
from hostprep.models import OnFailure, RetryPolicy, Step
from hostprep.runner import ActionError

DEPENDENCIES = "dependencies"
AI_TOOLS = "ai-tools"
ALL = "all"
GROUPS = (DEPENDENCIES, AI_TOOLS)

BASE_PACKAGES = (
    "build-essential",
    "software-properties-common",
    "apt-transport-https",
    "ca-certificates",
    "gnupg",
    "lsb-release",
    "curl",
    "wget",
    "git",
    "unzip",
    "zip",
    "netcat-openbsd",
)

PYTHON_PACKAGES = (
    "python3",
    "python3-dev",
    "python3-pip",
    "python3-venv",
    "python3-setuptools",
    "python3-wheel",
    "libpython3-dev",
)

MEDIA_PACKAGES = (
    "ffmpeg",
    "libavcodec-dev",
    "libavformat-dev",
    "libswscale-dev",
    "libjpeg-dev",
    "libpng-dev",
    "libwebp-dev",
    "libgl1",
    "libglib2.0-0",
)

ML_PACKAGES = (
    "libblas-dev",
    "liblapack-dev",
    "gfortran",
    "libhdf5-dev",
    "libffi-dev",
    "libssl-dev",
    "liblzma-dev",
    "libbz2-dev",
    "libsqlite3-dev",
)

DEV_TOOLS = ("htop", "tree", "jq", "tmux", "rsync")

REQUIRED_COMMANDS = ("python3", "pip3", "git", "curl", "node", "uv")

# Reported after a successful dependencies run.
VERSION_COMMANDS = {
    "python3": ("python3", "--version"),
    "pip3": ("pip3", "--version"),
    "git": ("git", "--version"),
    "curl": ("curl", "--version"),
    "node": ("node", "--version"),
    "npm": ("npm", "--version"),
    "uv": ("uv", "--version"),
}

PATH_EXPORT = 'export PATH="$HOME/.local/bin:$PATH"'

# The freshly started Ollama API can take a while to answer.
HEALTH_POLL = RetryPolicy(max_attempts=8, delay=1.0, backoff=2.0, max_delay=15.0)
DOWNLOAD_RETRY = RetryPolicy(max_attempts=2, delay=10.0)
NO_RETRY = RetryPolicy(max_attempts=1)


# ---------------------------------------------------------------------------
# Predicates and actions
# ---------------------------------------------------------------------------


def _always() -> bool:
    return True


def _nothing() -> None:
    return None


def _packages_present(names: Iterable[str]) -> bool:
    return not host.missing_packages(names)


def _uv() -> str:
    found = host.find_binary("uv")
    if found is None:
        raise ActionError("", "uv not found on PATH or in ~/.local/bin, ~/.cargo/bin")
    return str(found)


def _require_commands_ok(names: Sequence[str]) -> bool:
    return all(host.command_exists(name, host.ALTERNATE_BIN_DIRS) for name in names)


def _require_commands(names: Sequence[str]) -> None:
    missing = [name for name in names if not host.command_exists(name, host.ALTERNATE_BIN_DIRS)]
    if missing:
        raise ActionError("", f"missing {', '.join(missing)}; run the '{DEPENDENCIES}' group first")


def _install_nodejs(settings: Settings) -> None:
    host.run_external_installer(settings.nodesource_url, sudo=True)
    host.apt_install(["nodejs"])


def _imports(python: Path, module: str) -> bool:
    if not python.exists():
        return False
    try:
        host.run_command([str(python), "-c", f"import {module}"], timeout=120)
    except host.CommandError:
        return False
    return True


def _make_venv(location: Path, python: str | None = None) -> None:
    args = [_uv(), "venv", str(location)]
    if python:
        args += ["--python", python]
    host.run_command(args)


def _install_comfyui_packages(settings: Settings) -> None:
    repo = settings.home / "ComfyUI"
    python = str(repo / "venv" / "bin" / "python")
    uv = _uv()
    host.run_command(
        [uv, "pip", "install", "--python", python, "torch", "torchvision", "torchaudio",
         "--index-url", settings.torch_index_url]
    )
    requirements = repo / "requirements.txt"
    if requirements.is_file():
        host.run_command([uv, "pip", "install", "--python", python, "-r", str(requirements)])


def _install_openwebui(env: Path) -> None:
    host.run_command([_uv(), "pip", "install", "--python", str(env / "bin" / "python"), "open-webui"])


def _ollama_port(settings: Settings) -> int:
    return httpx.URL(settings.ollama_url).port or 11434


def _ollama_up(settings: Settings) -> bool:
    return host.http_ok(f"{settings.ollama_url.rstrip('/')}/api/version")


def _write_all(files: dict[Path, str], executable: bool = False) -> None:
    for path, content in files.items():
        host.write_file(path, content, executable=executable)


def _all_match(files: dict[Path, str], executable: bool = False) -> bool:
    return all(host.file_matches(p, c, executable=executable) for p, c in files.items())


# ---------------------------------------------------------------------------
# Generated files
# ---------------------------------------------------------------------------


def comfyui_launcher(settings: Settings) -> str:
    repo = settings.home / "ComfyUI"
    return (
        "#!/bin/bash\n"
        f'cd "{repo}"\n'
        f'exec "{repo}/venv/bin/python" main.py --port {settings.comfyui_port} "$@"\n'
    )


def openwebui_launcher(settings: Settings) -> str:
    env = settings.home / "openwebui-env"
    return (
        "#!/bin/bash\n"
        f'cd "{settings.home}"\n'
        f"export OLLAMA_BASE_URL={settings.ollama_url}\n"
        f'exec "{env}/bin/open-webui" serve --host 0.0.0.0 --port {settings.openwebui_port}\n'
    )


def desktop_entry(name: str, comment: str, exec_path: Path, icon: str, category: str) -> str:
    return (
        "[Desktop Entry]\n"
        "Version=1.0\n"
        "Type=Application\n"
        f"Name={name}\n"
        f"Comment={comment}\n"
        f"Exec={exec_path}\n"
        f"Icon={icon}\n"
        "Terminal=true\n"
        f"Categories={category};\n"
    )


def openwebui_unit(settings: Settings) -> str:
    env = settings.home / "openwebui-env"
    return (
        "[Unit]\n"
        "Description=Open WebUI\n"
        "After=network-online.target\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"WorkingDirectory={settings.home}\n"
        f"ExecStart={env}/bin/open-webui serve --host 0.0.0.0 --port {settings.openwebui_port}\n"
        f"Environment=OLLAMA_BASE_URL={settings.ollama_url}\n"
        "Restart=always\n"
        "RestartSec=5\n"
        "\n"
        "[Install]\n"
        "WantedBy=default.target\n"
    )


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


def _package_step(name: str, description: str, packages: Sequence[str], **kwargs) -> Step:
    return Step(
        name=name,
        description=description,
        precondition=partial(_packages_present, packages),
        action=partial(host.apt_install, packages),
        **kwargs,
    )


def dependency_steps(settings: Settings) -> list[Step]:
    """System packages and toolchains the AI tools build on."""
    uv_present = partial(host.command_exists, "uv", host.ALTERNATE_BIN_DIRS)
    return [
        Step(
            name="apt-update",
            description="Refresh package lists",
            precondition=partial(_packages_present, BASE_PACKAGES + PYTHON_PACKAGES),
            action=host.apt_update,
            postcondition=_always,
        ),
        _package_step("base-packages", "Build tools, curl, git, archive utilities", BASE_PACKAGES),
        _package_step("python-stack", "Python 3 with venv, pip and headers", PYTHON_PACKAGES),
        Step(
            name="nodejs",
            description="Node.js LTS from NodeSource",
            precondition=partial(host.command_exists, "node"),
            action=partial(_install_nodejs, settings),
        ),
        _package_step("media-libraries", "FFmpeg and image codecs", MEDIA_PACKAGES),
        _package_step("ml-libraries", "BLAS/LAPACK and native build headers", ML_PACKAGES),
        _package_step(
            "dev-tools", "Convenience CLI tools", DEV_TOOLS, on_failure=OnFailure.CONTINUE
        ),
        Step(
            name="uv",
            description="uv Python package manager",
            precondition=uv_present,
            action=partial(host.run_external_installer, settings.uv_installer_url),
            retry=DOWNLOAD_RETRY,
        ),
        Step(
            name="local-bin-path",
            description="Put ~/.local/bin on PATH in the shell rc",
            precondition=partial(host.line_in_file, settings.shell_rc, PATH_EXPORT),
            action=partial(host.append_line, settings.shell_rc, PATH_EXPORT),
        ),
        Step(
            name="workspace-dir",
            description=f"Create {settings.home}",
            precondition=settings.home.is_dir,
            action=partial(settings.home.mkdir, parents=True, exist_ok=True),
        ),
    ]


def ai_tool_steps(settings: Settings) -> list[Step]:
    """ComfyUI, Ollama (+ models) and Open WebUI."""
    home = settings.home
    comfy = home / "ComfyUI"
    webui_env = home / "openwebui-env"

    comfy_launcher = {home / "launch_comfyui.sh": comfyui_launcher(settings)}
    webui_launcher = {home / "launch_openwebui.sh": openwebui_launcher(settings)}
    shortcuts = {
        settings.desktop_dir / "ComfyUI.desktop": desktop_entry(
            "ComfyUI", "ComfyUI Launcher", home / "launch_comfyui.sh",
            "applications-graphics", "Graphics",
        ),
        settings.desktop_dir / "OpenWebUI.desktop": desktop_entry(
            "Open WebUI", "Open WebUI for Ollama", home / "launch_openwebui.sh",
            "applications-internet", "Network",
        ),
    }
    unit_path = settings.systemd_user_dir / "openwebui.service"
    unit = openwebui_unit(settings)

    def unit_installed() -> bool:
        return host.file_matches(unit_path, unit) and host.unit_enabled("openwebui.service", user=True)

    def install_unit() -> None:
        host.write_file(unit_path, unit)
        host.daemon_reload(user=True)
        host.enable_service("openwebui.service", user=True)

    def ollama_installed() -> bool:
        # A server already answering means some install exists, wherever it lives.
        return host.command_exists("ollama", ("/usr/local/bin", "/usr/bin")) or _ollama_up(settings)

    def ollama_serving() -> bool:
        return host.service_is_active("ollama") or host.tcp_port_in_use(_ollama_port(settings))

    steps = [
        Step(
            name="requirements",
            description="Check the dependency toolchain is present",
            precondition=partial(_require_commands_ok, REQUIRED_COMMANDS),
            action=partial(_require_commands, REQUIRED_COMMANDS),
            retry=NO_RETRY,
        ),
        Step(
            name="comfyui-clone",
            description="Clone the ComfyUI repository",
            precondition=(comfy / ".git").is_dir,
            action=partial(host.run_command, ["git", "clone", "--depth", "1", settings.comfyui_repo, str(comfy)]),
            retry=DOWNLOAD_RETRY,
        ),
        Step(
            name="comfyui-venv",
            description="Create the ComfyUI virtualenv",
            precondition=(comfy / "venv" / "bin" / "python").exists,
            action=partial(_make_venv, comfy / "venv"),
        ),
        Step(
            name="comfyui-packages",
            description="Install PyTorch and ComfyUI requirements",
            precondition=partial(_imports, comfy / "venv" / "bin" / "python", "torch"),
            action=partial(_install_comfyui_packages, settings),
            retry=DOWNLOAD_RETRY,
        ),
        Step(
            name="comfyui-launcher",
            description="Write launch_comfyui.sh",
            precondition=partial(_all_match, comfy_launcher, True),
            action=partial(_write_all, comfy_launcher, True),
        ),
        Step(
            name="ollama-install",
            description="Install Ollama with the vendor installer",
            precondition=ollama_installed,
            action=partial(host.run_external_installer, settings.ollama_installer_url),
            retry=DOWNLOAD_RETRY,
        ),
        Step(
            name="ollama-service",
            description="Enable and start the ollama system service",
            precondition=ollama_serving,
            action=partial(host.start_service, "ollama"),
        ),
        Step(
            name="ollama-api",
            description="Wait for the Ollama API to answer",
            precondition=partial(_ollama_up, settings),
            action=_nothing,
            retry=HEALTH_POLL,
        ),
    ]

    for model in settings.ollama_models:
        steps.append(
            Step(
                name=f"ollama-model:{model}",
                description=f"Pull {model}",
                precondition=partial(host.ollama_has_model, model),
                action=partial(host.ollama_pull, model),
                retry=DOWNLOAD_RETRY,
                on_failure=OnFailure.CONTINUE,
            )
        )

    steps += [
        Step(
            name="openwebui-venv",
            description=f"Create a Python {settings.openwebui_python} virtualenv for Open WebUI",
            precondition=(webui_env / "bin" / "python").exists,
            action=partial(_make_venv, webui_env, settings.openwebui_python),
        ),
        Step(
            name="openwebui-package",
            description="Install open-webui into its virtualenv",
            precondition=(webui_env / "bin" / "open-webui").is_file,
            action=partial(_install_openwebui, webui_env),
            retry=DOWNLOAD_RETRY,
        ),
        Step(
            name="openwebui-launcher",
            description="Write launch_openwebui.sh",
            precondition=partial(_all_match, webui_launcher, True),
            action=partial(_write_all, webui_launcher, True),
        ),
        Step(
            name="desktop-shortcuts",
            description="Desktop entries for ComfyUI and Open WebUI",
            precondition=partial(_all_match, shortcuts, True),
            action=partial(_write_all, shortcuts, True),
            on_failure=OnFailure.CONTINUE,
        ),
        Step(
            name="openwebui-unit",
            description="Per-user systemd unit for Open WebUI",
            precondition=unit_installed,
            action=install_unit,
            on_failure=OnFailure.CONTINUE,
        ),
    ]
    return steps


def toolchain_versions() -> dict[str, str | None]:
    """Version line per tool; None where the tool isn't runnable. Read-only."""
    versions = {}
    for tool, args in VERSION_COMMANDS.items():
        found = host.find_binary(tool)
        versions[tool] = host.tool_version([str(found), *args[1:]]) if found else None
    return versions


def build(settings: Settings) -> dict[str, list[Step]]:
    """All groups, in run order."""
    return {
        DEPENDENCIES: dependency_steps(settings),
        AI_TOOLS: ai_tool_steps(settings),
    }


def select(
    groups: dict[str, list[Step]],
    group: str = ALL,
    only: Sequence[str] = (),
) -> list[Step]:
    """
    Flatten the chosen group(s), optionally keeping only the named steps.

    Declaration order is preserved regardless of the order of ``only``.
    Raises KeyError for an unknown group or step name.
    """
    if group == ALL:
        steps = [step for name in GROUPS for step in groups[name]]
    elif group in groups:
        steps = list(groups[group])
    else:
        raise KeyError(f"Unknown group: {group}")

    if not only:
        return steps

    wanted = set(only)
    unknown = wanted - {step.name for step in steps}
    if unknown:
        raise KeyError(f"Unknown step(s): {', '.join(sorted(unknown))}")
    return [step for step in steps if step.name in wanted]
