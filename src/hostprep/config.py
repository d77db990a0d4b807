# config.py
# Settings for hostprep.
#
# Every value can be overridden with a HOSTPREP_* environment variable; the
# CLI loads a .env file from the working directory first.
#
#   export HOSTPREP_HOME=/opt/ai-tools
#   export HOSTPREP_OLLAMA_MODELS=llama3.2:3b,qwen2.5-coder:7b

from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from hostprep.models import RetryPolicy, RunPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HOSTPREP_", extra="ignore")

    home: Path = Field(default=Path("~/ai-tools"), description="Install root for the AI tools.")
    desktop_dir: Path = Path("~/Desktop")
    systemd_user_dir: Path = Path("~/.config/systemd/user")
    shell_rc: Path = Path("~/.bashrc")

    ollama_url: str = "http://localhost:11434"
    comfyui_port: int = Field(default=8188, ge=1, le=65535)
    openwebui_port: int = Field(default=8080, ge=1, le=65535)
    ollama_models: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["llama3.2:3b"])

    comfyui_repo: str = "https://github.com/comfyanonymous/ComfyUI.git"
    torch_index_url: str = "https://download.pytorch.org/whl/cpu"
    openwebui_python: str = "3.11"

    nodesource_url: str = "https://deb.nodesource.com/setup_lts.x"
    uv_installer_url: str = "https://astral.sh/uv/install.sh"
    ollama_installer_url: str = "https://ollama.com/install.sh"

    max_attempts: int = Field(default=2, ge=1, description="Default attempts per step.")
    retry_delay: float = Field(default=5.0, ge=0, description="Default seconds between attempts.")

    @field_validator("ollama_models", mode="before")
    @classmethod
    def _split_models(cls, value):
        if isinstance(value, str):
            return [m.strip() for m in value.split(",") if m.strip()]
        return value

    @field_validator("home", "desktop_dir", "systemd_user_dir", "shell_rc")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()

    def run_policy(self, stop_on_failure: bool = False) -> RunPolicy:
        return RunPolicy(
            default_retry=RetryPolicy(max_attempts=self.max_attempts, delay=self.retry_delay),
            stop_on_failure=stop_on_failure,
        )


def load_settings(**overrides) -> Settings:
    """Build settings from the environment; keyword overrides win."""
    return Settings(**overrides)
