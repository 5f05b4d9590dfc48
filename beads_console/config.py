"""Configuration settings for the Beads Console core."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Paths
    data_dir: Path = Path.home() / ".beads-console"
    beads_dir_name: str = ".beads"
    beads_db_name: str = "beads.db"
    memory_db_name: str = "memory.db"
    sessions_dir_name: str = "sessions"

    # Overrides the per-project memory database when set
    memory_db_url: str | None = None

    # Agent CLI
    claude_cmd: str = "claude"
    claude_model: str = "sonnet"

    # Memory
    memory_brief_tokens: int = 2000
    memory_limit: int = 50
    # Give launched agents the read_memory/write_memory/search_memory tools
    memory_mcp_enabled: bool = True

    # Task runs (seconds)
    status_poll_interval: float = 2.0
    epic_advance_delay: float = 1.0
    run_retention_seconds: float = 3600.0
    agent_exit_grace_seconds: float = 10.0

    # Live updates (seconds)
    heartbeat_interval: float = 15.0
    stale_subscriber_seconds: float = 120.0
    subscriber_queue_size: int = 1000

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_mirror_enabled: bool = False

    log_level: str = "INFO"

    @property
    def credentials_file(self) -> Path:
        """Where the agent CLI OAuth token is stored."""
        return self.data_dir / "claude-token"

    def beads_dir(self, project_path: str | Path) -> Path:
        return Path(project_path) / self.beads_dir_name

    def sessions_dir(self, project_path: str | Path) -> Path:
        return self.beads_dir(project_path) / self.sessions_dir_name

    def memory_db_path(self, project_path: str | Path) -> Path:
        return self.beads_dir(project_path) / self.memory_db_name

    def memory_db_url_for(self, project_path: str | Path) -> str:
        """Async SQLAlchemy URL of a project's memory database."""
        if self.memory_db_url:
            return self.memory_db_url
        return f"sqlite+aiosqlite:///{self.memory_db_path(project_path)}"

    def beads_db_url_for(self, project_path: str | Path) -> str:
        """Async SQLAlchemy URL of a project's issue tracker database."""
        return f"sqlite+aiosqlite:///{self.beads_dir(project_path) / self.beads_db_name}"

    class Config:
        env_prefix = "BEADS_CONSOLE_"
        env_file = ".env"


# Global settings instance
settings = Settings()
