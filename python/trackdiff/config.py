import getpass
import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from trackdiff.models import Granularity

logger = structlog.get_logger(__name__)

ENV_PREFIX = "TRACKDIFF_"
DEFAULT_SETTINGS_PATH = Path.home() / ".config" / "trackdiff" / "settings.json"


def _login_name() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "trackdiff"


class ReviewConfig(BaseModel):
    """
    Settings for a review session: where the model lives and how revisions are applied.
    Loaded from a JSON settings file, then TRACKDIFF_* environment variables on top.
    """

    ollama_url: str = Field("http://localhost:11434", description="Base URL of the Ollama-compatible server.")
    api_key: Optional[str] = Field(None, description="Sent as a Bearer token when set.")
    model: str = Field("gpt-oss:20b", description="Model name passed to /api/generate.")
    timeout: float = Field(60.0, description="Request timeout in seconds.")
    track_changes: bool = Field(True, description="Record revisions as tracked changes.")
    fallback_granularity: Granularity = Field(
        Granularity.TOKEN, description="Diff unit used by the search-anchored fallback replay."
    )
    fallback_strategy: Literal["replay", "block"] = Field(
        "replay", description="'replay' re-finds each chunk by search; 'block' replaces the whole range."
    )
    author: str = Field(default_factory=_login_name, description="Author recorded on tracked changes.")

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "ReviewConfig":
        """
        Builds a config from (lowest to highest precedence) defaults, the settings
        file, the environment and explicit overrides. None overrides are ignored.
        """
        data: Dict[str, Any] = {}

        settings_path = path or DEFAULT_SETTINGS_PATH
        if settings_path.exists():
            try:
                with open(settings_path, "r", encoding="utf-8") as f:
                    content = f.read().strip()
                if content:
                    data.update(json.loads(content))
            except json.JSONDecodeError as e:
                logger.warning("Ignoring invalid settings file", path=str(settings_path), error=str(e))

        env = os.environ if env is None else env
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in env:
                data[name] = env[key]

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)

    def save(self, path: Optional[Path] = None) -> Path:
        settings_path = path or DEFAULT_SETTINGS_PATH
        settings_path.parent.mkdir(parents=True, exist_ok=True)
        with open(settings_path, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(mode="json", exclude={"api_key"}), f, indent=2)
        return settings_path
