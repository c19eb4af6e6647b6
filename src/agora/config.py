"""Runtime configuration.

Settings come from environment variables, optionally supplied through a
``.env`` file in the working directory. Variables already set in the
environment take precedence over the file.

    AGORA_DATA_DIR                  directory holding events.jsonl (default: data)
    AGORA_ADMINISTRATOR             administrator of a newly created election
    AGORA_CALLER                    default calling identity for the CLI
    AGORA_LOG_LEVEL                 logging level (default: WARNING)
    AGORA_DEFAULT_DEADLINE_SECONDS  default for ``set-deadline`` (default: 3600)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv


DEFAULT_DATA_DIR = Path("data")
DEFAULT_LOG_LEVEL = "WARNING"
DEFAULT_DEADLINE_SECONDS = 3600


@dataclass(frozen=True)
class AgoraSettings:
    """Resolved runtime settings."""
    data_dir: Path = DEFAULT_DATA_DIR
    administrator: Optional[str] = None
    caller: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL
    default_deadline_seconds: int = DEFAULT_DEADLINE_SECONDS

    @property
    def event_log_path(self) -> Path:
        return self.data_dir / "events.jsonl"

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Path] = None,
    ) -> AgoraSettings:
        """Build settings from the environment.

        When ``env`` is None the process environment is used, after
        loading ``dotenv_path`` (default: ``.env``) without overriding
        variables that are already set.
        """
        if env is None:
            load_dotenv(dotenv_path or Path(".env"), override=False)
            env = os.environ

        deadline_raw = env.get("AGORA_DEFAULT_DEADLINE_SECONDS")
        deadline = DEFAULT_DEADLINE_SECONDS
        if deadline_raw:
            try:
                deadline = int(deadline_raw)
            except ValueError:
                raise ValueError(
                    f"AGORA_DEFAULT_DEADLINE_SECONDS must be an integer, got {deadline_raw!r}"
                ) from None
            if deadline < 0:
                raise ValueError("AGORA_DEFAULT_DEADLINE_SECONDS must be >= 0")

        return cls(
            data_dir=Path(env.get("AGORA_DATA_DIR") or DEFAULT_DATA_DIR),
            administrator=env.get("AGORA_ADMINISTRATOR") or None,
            caller=env.get("AGORA_CALLER") or None,
            log_level=(env.get("AGORA_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper(),
            default_deadline_seconds=deadline,
        )
