"""Configuration management for cjode."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.cjode/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

PRODUCTION_MAX_OUTPUT_TOKENS = 32000
LIGHTWEIGHT_MAX_OUTPUT_TOKENS = 2000


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    reviewer_model: str = "claude-3-5-haiku-latest"
    temperature: float = 0.7
    api_key: str = ""
    base_url: str = ""
    request_timeout: float = 120.0

    def resolved_api_key(self) -> str:
        """Return the configured key, falling back to the provider's env var."""
        if self.api_key:
            return self.api_key
        if self.provider == "anthropic":
            return os.environ.get("ANTHROPIC_API_KEY", "")
        return ""


class AgentConfig(BaseModel):
    """Agent loop budgets."""

    mode: Literal["production", "lightweight"] = "production"
    max_output_tokens: int | None = None
    max_steps: int = 100
    long_horizon_max_steps: int = 200

    def resolved_max_output_tokens(self) -> int:
        if self.max_output_tokens:
            return int(self.max_output_tokens)
        if self.mode == "lightweight":
            return LIGHTWEIGHT_MAX_OUTPUT_TOKENS
        return PRODUCTION_MAX_OUTPUT_TOKENS


class ContextConfig(BaseModel):
    """Context window configuration."""

    max_tokens: int = 160000


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 30
    max_output_bytes: int = 10 * 1024 * 1024
    safety: Literal["llm", "patterns", "hybrid"] = "llm"
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        "dd",
        "shutdown",
        "reboot",
        ":(){:|:&};:",
    ]


class GrepToolConfig(BaseModel):
    """Content search configuration."""

    binary: str = "rg"
    timeout: int = 30


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "read",
        "list_dir",
        "write_file",
        "edit_file",
        "glob",
        "grep",
        "bash",
    ]
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    grep: GrepToolConfig = Field(default_factory=GrepToolConfig)


class WorkspaceConfig(BaseModel):
    """Workspace root configuration."""

    path: str = ""


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = Field(default=3001, ge=1, le=65535)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for cjode."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CJODE_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Environment and ``.env`` values win over YAML passed as init kwargs."""
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML with environment overrides applied."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace root, anchoring relative paths to runtime base/cwd."""
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        if not self.workspace.path:
            return anchor
        raw = Path(self.workspace.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
