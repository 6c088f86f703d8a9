"""Engine settings, JSON persistence and environment overrides.

Values are resolved in three layers: the JSON file, then overrides passed by
the caller (the CLI flags), then ``INKWELL_*`` environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Mapping

__all__ = [
    "Settings",
    "SettingsStore",
    "DEFAULT_MAX_LOOP_COUNT",
    "REASONING_EFFORT_CHOICES",
    "environment_overrides",
    "merge_settings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_LOOP_COUNT = 20
REASONING_EFFORT_CHOICES: tuple[str, ...] = ("low", "medium", "high")
FILE_FORMAT_VERSION = 1
_DEFAULT_PATH = Path("~/.inkwell/settings.json")


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    provider_id: str = "openai"
    stream_url: str = "http://localhost:3000/api/ai/chat/stream"
    tool_execute_url: str = "http://localhost:3000/api/ai/tools/execute"
    auth_token: str = ""
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_loop_count: int = DEFAULT_MAX_LOOP_COUNT
    unlimited_loop: bool = False
    thinking_enabled: bool = False
    reasoning_effort: str = "medium"
    yolo_mode: bool = False
    tool_permissions: dict[str, bool] = field(default_factory=dict)
    fuzzy_threshold: float = 0.85
    diff_context_lines: int = 3
    diff_max_display_lines: int = 500
    diff_size_ceiling: int = 1024 * 1024
    args_update_throttle_ms: int = 100
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False


_FIELD_NAMES = frozenset(item.name for item in fields(Settings))


def _flag(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on", "debug"}


def _integer(raw: str) -> int:
    return int(raw, 10)


# Environment variable suffix -> (field, parser). Every variable is INKWELL_<suffix>.
_ENVIRONMENT: dict[str, tuple[str, Callable[[str], Any]]] = {
    "API_KEY": ("api_key", str),
    "BASE_URL": ("base_url", str),
    "MODEL": ("model", str),
    "PROVIDER_ID": ("provider_id", str),
    "STREAM_URL": ("stream_url", str),
    "TOOL_EXECUTE_URL": ("tool_execute_url", str),
    "AUTH_TOKEN": ("auth_token", str),
    "REASONING_EFFORT": ("reasoning_effort", str),
    "DEBUG_LOGGING": ("debug_logging", _flag),
    "YOLO_MODE": ("yolo_mode", _flag),
    "UNLIMITED_LOOP": ("unlimited_loop", _flag),
    "THINKING_ENABLED": ("thinking_enabled", _flag),
    "REQUEST_TIMEOUT": ("request_timeout", float),
    "TEMPERATURE": ("temperature", float),
    "FUZZY_THRESHOLD": ("fuzzy_threshold", float),
    "MAX_LOOP_COUNT": ("max_loop_count", _integer),
    "MAX_RETRIES": ("max_retries", _integer),
}


class SettingsStore:
    """Reads and writes :class:`Settings` as a versioned JSON document."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = (path or _DEFAULT_PATH).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        settings = self._from_file()
        if overrides:
            settings = merge_settings(settings, overrides, source="CLI")
        environment = environment_overrides(os.environ)
        if environment:
            settings = merge_settings(settings, environment, source="environment")
        return _normalize(settings)

    def save(self, settings: Settings) -> Path:
        """Write ``settings`` next to the target and move it into place."""

        document = {"version": FILE_FORMAT_VERSION, **asdict(settings)}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_name(self._path.name + ".tmp")
        staging.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Wrote settings to %s (api_key=%s)", self._path, redact_secret(settings.api_key))
        return self._path

    def _from_file(self) -> Settings:
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return Settings()
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Could not read settings from %s: %s", self._path, exc)
            return Settings()
        if not isinstance(document, dict):
            LOGGER.warning("Settings file %s does not hold a JSON object; using defaults", self._path)
            return Settings()

        known = {key: value for key, value in document.items() if key in _FIELD_NAMES}
        if "tool_permissions" in known and not isinstance(known["tool_permissions"], Mapping):
            LOGGER.warning("Dropping tool_permissions from %s: expected an object", self._path)
            del known["tool_permissions"]
        try:
            return Settings(**known)
        except TypeError as exc:
            LOGGER.warning("Settings file %s has unexpected values: %s", self._path, exc)
            return Settings()


def merge_settings(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    """Return ``settings`` with every known, non-``None`` override applied.

    ``tool_permissions`` is merged key by key rather than replaced.
    """

    changes = {key: value for key, value in overrides.items() if key in _FIELD_NAMES and value is not None}
    if isinstance(changes.get("tool_permissions"), Mapping):
        changes["tool_permissions"] = {**settings.tool_permissions, **changes["tool_permissions"]}
    if not changes:
        return settings
    LOGGER.debug("Applying %s overrides: %s", source, ", ".join(sorted(changes)))
    return replace(settings, **changes)


def environment_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Parse the ``INKWELL_*`` variables present in ``environ``."""

    parsed: dict[str, Any] = {}
    for suffix, (name, parser) in _ENVIRONMENT.items():
        variable = f"INKWELL_{suffix}"
        raw = environ.get(variable)
        if raw is None:
            continue
        try:
            parsed[name] = parser(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: not a valid %s", variable, raw, parser.__name__.lstrip("_"))
    return parsed


def _normalize(settings: Settings) -> Settings:
    fixes: dict[str, Any] = {}
    if settings.max_loop_count < 1:
        LOGGER.warning("max_loop_count=%s is invalid; using %s", settings.max_loop_count, DEFAULT_MAX_LOOP_COUNT)
        fixes["max_loop_count"] = DEFAULT_MAX_LOOP_COUNT
    effort = (settings.reasoning_effort or "").strip().lower()
    if effort not in REASONING_EFFORT_CHOICES:
        effort = "medium"
    if effort != settings.reasoning_effort:
        fixes["reasoning_effort"] = effort
    if not 0.0 < settings.fuzzy_threshold <= 1.0:
        fixes["fuzzy_threshold"] = 0.85
    return replace(settings, **fixes) if fixes else settings


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters of a secret."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]
