"""Configuration for the Letta sync hooks.

All settings come from the environment (optionally seeded from a ``.env``
file by the CLI). Two state scopes exist:

- global: ``~/.letta/claude-subconscious/config.json`` (agent id, model)
- project: ``<cwd>/.letta/claude/`` (conversation bindings, cursors)
"""

import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping

from subconscious.errors import ConfigurationError

DEFAULT_BASE_URL = "https://api.letta.com"
LETTA_APP_BASE = "https://app.letta.com"

# Per-hook network budgets, in seconds. The host enforces its own hard
# timeout on top of these.
SESSION_START_TIMEOUT = 15.0
PROMPT_TIMEOUT = 8.0
DELIVERY_TIMEOUT = 120.0

PACKAGE_DIR = Path(__file__).parent


class InjectionMode(str, Enum):
    """How much agent content is surfaced into the host's context."""

    OFF = "off"
    WHISPER = "whisper"
    FULL = "full"


class ContextTarget(str, Enum):
    """Where surfaced content goes."""

    STDOUT = "stdout"  # hook additionalContext, diffed after the first render
    DOCUMENT = "document"  # merged into .claude/CLAUDE.md


def _parse_enum(enum_cls, variable: str, raw: str):
    value = raw.strip().lower()
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(
            f"Invalid {variable} '{value}'. Expected one of: {valid}"
        )


@dataclass
class Settings:
    """Resolved runtime settings."""

    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    agent_id: str | None = None
    model: str | None = None
    context_window: str | None = None
    mode: InjectionMode = InjectionMode.FULL
    target: ContextTarget = ContextTarget.STDOUT
    home_dir: Path = Path.home() / ".letta" / "claude-subconscious"
    agent_file: Path = PACKAGE_DIR / "Subconscious.af"
    temp_dir: Path = Path(tempfile.gettempdir()) / "letta-claude-sync"
    project_dir: Path | None = None
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)

        Returns:
            Settings instance

        Raises:
            ConfigurationError: LETTA_MODE or LETTA_SYNC_TARGET has an unknown value
        """
        env = os.environ if environ is None else environ

        mode = _parse_enum(
            InjectionMode, "LETTA_MODE", env.get("LETTA_MODE") or InjectionMode.FULL.value
        )
        target = _parse_enum(
            ContextTarget,
            "LETTA_SYNC_TARGET",
            env.get("LETTA_SYNC_TARGET") or ContextTarget.STDOUT.value,
        )

        settings = cls(
            api_key=env.get("LETTA_API_KEY") or None,
            base_url=(env.get("LETTA_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            agent_id=env.get("LETTA_AGENT_ID") or None,
            model=env.get("LETTA_MODEL") or None,
            context_window=env.get("LETTA_CONTEXT_WINDOW") or None,
            mode=mode,
            target=target,
            debug=env.get("SUBCONSCIOUS_DEBUG", "").lower() in ("1", "true", "yes"),
        )
        if env.get("LETTA_HOME"):
            settings.home_dir = Path(env["LETTA_HOME"]).expanduser()
        if env.get("LETTA_AGENT_FILE"):
            settings.agent_file = Path(env["LETTA_AGENT_FILE"]).expanduser()
        if env.get("LETTA_SYNC_TEMP_DIR"):
            settings.temp_dir = Path(env["LETTA_SYNC_TEMP_DIR"]).expanduser()
        if env.get("CLAUDE_PROJECT_DIR"):
            settings.project_dir = Path(env["CLAUDE_PROJECT_DIR"])
        return settings

    @property
    def api_base(self) -> str:
        return f"{self.base_url}/v1"

    @property
    def global_config_file(self) -> Path:
        return self.home_dir / "config.json"

    @property
    def handoff_dir(self) -> Path:
        return self.temp_dir / "handoff"

    def require_api_key(self) -> str:
        """Return the API key or fail with remediation text."""
        if not self.api_key:
            raise ConfigurationError(
                "LETTA_API_KEY is not set.\n"
                "Create an API key at https://app.letta.com and export it, e.g.\n"
                "  export LETTA_API_KEY=sk-let-..."
            )
        return self.api_key


def project_state_dir(cwd: Path | str) -> Path:
    """Durable per-project state directory."""
    return Path(cwd) / ".letta" / "claude"
