from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "extra": "ignore",
        "env_prefix": "PARROT_",
        "env_file": (
            str(Path.home() / ".local" / "share" / "parrot-autopilot" / ".env"),
            ".env",
        ),
        "env_file_encoding": "utf-8",
    }

    data: Path = Path.home() / ".local" / "share" / "parrot-autopilot"
    log_level: str = "INFO"

    # AI provider
    ai_provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    anthropic_api_key: str | None = None
    cli_path: Path | None = None

    # Tone of voice: 0 = brief / formal, 100 = detailed / casual
    tone_brief_detailed: int = 50
    tone_formal_casual: int = 50
    writing_samples: list[str] = []

    # History loader
    history_batch_size: int = 200
    history_batch_delay: float = 8.0  # seconds between batches
    history_error_backoff: float = 15.0  # seconds before retrying a failed batch

    # Action executor
    executor_poll_interval: float = 1.0
    max_action_attempts: int = 3
    action_retry_delay: int = 60  # seconds
    cleanup_interval: int = 3600  # seconds between terminal-action cleanups

    # Registry
    max_consecutive_failures: int = 3
    goal_confidence_threshold: int = 70

    # Knowledge
    confidence_boost: int = 5
    max_facts_per_chat: int = 50

    @property
    def db_path(self) -> Path:
        return self.data / "parrot-autopilot.db"


settings = Settings()
