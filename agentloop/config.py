"""Configuration settings for the agent loop."""

from pathlib import Path

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from .errors import ConfigurationError
from .models import ToolKind


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Paths
    state_dir: Path = Path(".agentloop")

    # Agent CLI commands
    cursor_agent_cmd: str = "cursor-agent"
    claude_cmd: str = "claude"
    gemini_cmd: str = "gemini"

    # Timeouts (milliseconds)
    cursor_agent_timeout_ms: int = Field(default=1_800_000, gt=0)  # 30 minutes, remote backend
    claude_timeout_ms: int = Field(default=600_000, gt=0)  # 10 minutes
    gemini_timeout_ms: int = Field(default=600_000, gt=0)  # 10 minutes
    probe_timeout_ms: int = Field(default=5_000, gt=0)
    grace_period_ms: int = Field(default=500, ge=0)

    # Scheduling
    max_concurrency: int = 3
    max_iterations: int = Field(default=10, ge=1)
    # Treat an iteration as failed unless every quality check passes
    require_quality_gate: bool = False
    id_prefixes: list[str] = ["US", "GH"]

    # Compressed context
    recent_count: int = Field(default=3, ge=0)
    compression_threshold: int = Field(default=5, ge=1)
    memory_snippets: int = Field(default=3, ge=0)

    @property
    def history_dir(self) -> Path:
        return self.state_dir / "history"

    @property
    def progress_file(self) -> Path:
        return self.state_dir / "progress.txt"

    def command_for(self, tool: ToolKind) -> str:
        """Executable (possibly with leading arguments) used for a tool."""
        return {
            ToolKind.CURSOR_AGENT: self.cursor_agent_cmd,
            ToolKind.CLAUDE_CODE: self.claude_cmd,
            ToolKind.GEMINI_CLI: self.gemini_cmd,
        }[tool]

    def timeout_for(self, tool: ToolKind) -> int:
        return {
            ToolKind.CURSOR_AGENT: self.cursor_agent_timeout_ms,
            ToolKind.CLAUDE_CODE: self.claude_timeout_ms,
            ToolKind.GEMINI_CLI: self.gemini_timeout_ms,
        }[tool]

    class Config:
        env_prefix = "AGENTLOOP_"
        env_file = ".env"


def load_settings(**overrides: object) -> Settings:
    """Build settings from the environment, applying explicit overrides.

    Validation problems surface as ConfigurationError so the CLI reports them
    without a traceback.
    """
    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e
