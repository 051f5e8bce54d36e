# guidance_policy/settings.py
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from guidance_policy.contracts import Strategy
from guidance_policy.help_flow import DEFAULT_DEDUPE_CAPACITY, HelpFlowState


class GuidanceSettings(BaseSettings):
    """
    Deployment knobs read from ``GUIDANCE_*`` environment variables or a
    local ``.env`` file. None of these change how decisions are made.
    """

    model_config = SettingsConfigDict(env_prefix="GUIDANCE_", env_file=".env", extra="ignore")

    content_csv: Path | None = None
    dedupe_capacity: int = Field(default=DEFAULT_DEDUPE_CAPACITY, ge=2)
    log_level: str = "WARNING"
    default_strategy: Strategy = Strategy.ADAPTIVE_MEDIUM
    artifacts_dir: Path = Path("artifacts")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper() or "WARNING"

    @property
    def events_log_path(self) -> Path:
        return self.artifacts_dir / "events.jsonl"

    @property
    def traces_dir(self) -> Path:
        return self.artifacts_dir / "traces"

    def new_help_flow_state(self) -> HelpFlowState:
        return HelpFlowState(capacity=self.dedupe_capacity)


@lru_cache(maxsize=1)
def get_settings() -> GuidanceSettings:
    return GuidanceSettings()
