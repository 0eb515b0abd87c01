"""docstream configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (DOCSTREAM_CLASSIFICATION_MODEL, DOCSTREAM_PROPOSAL_MODEL,
     DOCSTREAM_EMBEDDING_MODEL, DOCSTREAM_LOG_LEVEL, DOCSTREAM_DB)
  3. Per-project docstream.yaml
  4. Global ~/.docstream/config.yaml  (model defaults only, no credentials)
  5. Hardcoded defaults

Source credentials never belong in the global config. Adapter secrets are read
from the environment by resolve_credentials(); see SOURCE_CREDENTIAL_KEYS.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from docstream.errors import ConfigError
from docstream.stream.recurrence import parse_interval

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".docstream"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "docstream.yaml"
DEFAULT_DB_NAME: str = ".docstream.db"

# Fields that suggest a credential and are forbidden in the global config.
# Does NOT match legitimate keys like token_budget or max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["sources", "scheduler", "batch", "models", "retrieval", "docs", "logging", "database"]
)

# Adapter credential keys that may be supplied through the environment.
# Lookup order: <SOURCE_ID>_<KEY>, then <KEY>, then the source config value.
SOURCE_CREDENTIAL_KEYS: dict[str, dict[str, str]] = {
    "zulip": {
        "site": "ZULIP_SITE",
        "email": "ZULIP_EMAIL",
        "api_key": "ZULIP_API_KEY",
    },
    "telegram": {
        "bot_token": "TELEGRAM_BOT_TOKEN",
    },
    "csv": {},
}


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class SourceCfg:
    """One configured message source (docstream.yaml: sources[]).

    Attributes:
        id: Stable source identifier; also the key for watermarks and messages.
        adapter: Adapter variant tag ('zulip', 'telegram' or 'csv').
        enabled: Disabled sources are registered but never scheduled.
        schedule: Recurrence expression ('15m', '*/30 * * * *'); None = manual only.
        config: Adapter-specific settings, passed through untouched.
    """

    id: str
    adapter: str
    enabled: bool = True
    schedule: str | None = None
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class SchedulerCfg:
    """Coordinator limits (docstream.yaml: scheduler:)."""

    max_concurrent_sources: int = 3
    default_batch_size: int = 10
    enable_scheduling: bool = True
    batch_schedule: str | None = None
    shutdown_timeout: float = 30.0


@dataclass
class BatchCfg:
    """Batch processor window and failure policy (docstream.yaml: batch:)."""

    window_hours: int = 24
    max_batch_size: int = 30
    conversation_gap_minutes: int = 15
    max_failures: int = 3
    lookback_days: int = 7


@dataclass
class ModelsCfg:
    """LiteLLM model selection and retry policy (docstream.yaml: models:)."""

    classification: str = "openai/gpt-4o-mini"
    proposal: str = "openai/gpt-4o"
    embedding: str = "openai/text-embedding-3-small"
    embedding_dims: int = 1536
    max_attempts: int = 3
    base_delay: float = 2.0
    cache: bool = True


@dataclass
class RetrievalCfg:
    """Context retrieval configuration (docstream.yaml: retrieval:)."""

    top_k: int = 5
    token_budget: int = 8_192


@dataclass
class DocsCfg:
    """Knowledge base location (docstream.yaml: docs:).

    Attributes:
        path: Local directory or git checkout holding the documentation pages.
        kind: 'git' (commit hash as version marker) or 'directory' (content hash).
    """

    path: str | None = None
    kind: str = "directory"


@dataclass
class LoggingCfg:
    """Logging configuration (docstream.yaml: logging:)."""

    level: str = "INFO"
    file: str | None = None


@dataclass
class DocstreamConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: str = DEFAULT_DB_NAME
    sources: list[SourceCfg] = field(default_factory=list)
    scheduler: SchedulerCfg = field(default_factory=SchedulerCfg)
    batch: BatchCfg = field(default_factory=BatchCfg)
    models: ModelsCfg = field(default_factory=ModelsCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    docs: DocsCfg = field(default_factory=DocsCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)

    def get_source(self, source_id: str) -> SourceCfg | None:
        for src in self.sources:
            if src.id == source_id:
                return src
        return None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any credential-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  Credentials must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)
        elif isinstance(obj, list):
            for i, item in enumerate(obj):
                _scan(item, f"{path}[{i}]")

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}', ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate_sources(sources: list[SourceCfg]) -> None:
    seen: set[str] = set()
    for src in sources:
        if not src.id:
            raise ConfigError("Every entry in 'sources' needs a non-empty 'id'.")
        if src.id in seen:
            raise ConfigError(f"Duplicate source id '{src.id}' in 'sources'.")
        seen.add(src.id)
        if not src.adapter:
            raise ConfigError(f"Source '{src.id}' has no 'adapter' set.")
        if src.schedule:
            parse_interval(src.schedule)


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*.

    Lists are replaced, not concatenated.
    """
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_source(raw: dict[str, Any]) -> SourceCfg:
    if not isinstance(raw, dict):
        raise ConfigError(f"Each source must be a mapping, got: {raw!r}")
    settings = raw.get("config") or {}
    if not isinstance(settings, dict):
        raise ConfigError(f"Source '{raw.get('id')}' config must be a mapping.")
    return SourceCfg(
        id=str(raw.get("id", "")),
        adapter=str(raw.get("adapter", raw.get("type", ""))),
        enabled=bool(raw.get("enabled", True)),
        schedule=raw.get("schedule"),
        config=dict(settings),
    )


def _cfg_from_dict(data: dict[str, Any]) -> DocstreamConfig:
    """Build a *DocstreamConfig* from a merged raw YAML dict."""
    cfg = DocstreamConfig()

    if "database" in data:
        cfg.database = str(data["database"])

    if "sources" in data:
        cfg.sources = [_parse_source(s) for s in data["sources"] or []]

    if "scheduler" in data:
        s = data["scheduler"]
        cfg.scheduler = SchedulerCfg(
            max_concurrent_sources=int(
                s.get("max_concurrent_sources", cfg.scheduler.max_concurrent_sources)
            ),
            default_batch_size=int(s.get("default_batch_size", cfg.scheduler.default_batch_size)),
            enable_scheduling=bool(s.get("enable_scheduling", cfg.scheduler.enable_scheduling)),
            batch_schedule=s.get("batch_schedule", cfg.scheduler.batch_schedule),
            shutdown_timeout=float(s.get("shutdown_timeout", cfg.scheduler.shutdown_timeout)),
        )

    if "batch" in data:
        b = data["batch"]
        cfg.batch = BatchCfg(
            window_hours=int(b.get("window_hours", cfg.batch.window_hours)),
            max_batch_size=int(b.get("max_batch_size", cfg.batch.max_batch_size)),
            conversation_gap_minutes=int(
                b.get("conversation_gap_minutes", cfg.batch.conversation_gap_minutes)
            ),
            max_failures=int(b.get("max_failures", cfg.batch.max_failures)),
            lookback_days=int(b.get("lookback_days", cfg.batch.lookback_days)),
        )

    if "models" in data:
        m = data["models"]
        cfg.models = ModelsCfg(
            classification=str(m.get("classification", cfg.models.classification)),
            proposal=str(m.get("proposal", cfg.models.proposal)),
            embedding=str(m.get("embedding", cfg.models.embedding)),
            embedding_dims=int(m.get("embedding_dims", cfg.models.embedding_dims)),
            max_attempts=int(m.get("max_attempts", cfg.models.max_attempts)),
            base_delay=float(m.get("base_delay", cfg.models.base_delay)),
            cache=bool(m.get("cache", cfg.models.cache)),
        )

    if "retrieval" in data:
        r = data["retrieval"]
        cfg.retrieval = RetrievalCfg(
            top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            token_budget=int(r.get("token_budget", cfg.retrieval.token_budget)),
        )

    if "docs" in data:
        d = data["docs"]
        cfg.docs = DocsCfg(
            path=d.get("path", cfg.docs.path),
            kind=str(d.get("kind", cfg.docs.kind)),
        )

    if "logging" in data:
        lg = data["logging"]
        cfg.logging = LoggingCfg(
            level=str(lg.get("level", cfg.logging.level)).upper(),
            file=lg.get("file", cfg.logging.file),
        )

    return cfg


def _apply_env_overrides(cfg: DocstreamConfig) -> DocstreamConfig:
    """Apply DOCSTREAM_* environment variable overrides (layer 2)."""
    if model := os.environ.get("DOCSTREAM_CLASSIFICATION_MODEL"):
        cfg.models.classification = model
    if model := os.environ.get("DOCSTREAM_PROPOSAL_MODEL"):
        cfg.models.proposal = model
    if model := os.environ.get("DOCSTREAM_EMBEDDING_MODEL"):
        cfg.models.embedding = model
    if (flag := os.environ.get("DOCSTREAM_LLM_CACHE")) is not None:
        cfg.models.cache = flag.strip().lower() not in {"0", "false", "no", "off"}
    if level := os.environ.get("DOCSTREAM_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    if db := os.environ.get("DOCSTREAM_DB"):
        cfg.database = db
    return cfg


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def _env_prefix(source_id: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", source_id.upper())


def resolve_credentials(source: SourceCfg) -> dict[str, Any]:
    """Return the adapter settings for *source* with env credentials injected.

    For each credential key of the adapter the first hit wins:
    ``<SOURCE_ID>_<ENV>`` (per-instance), ``<ENV>`` (shared), the config value.

    Args:
        source: Source configuration entry.

    Returns:
        A new settings dict; *source.config* is not mutated.
    """
    settings = dict(source.config)
    prefix = _env_prefix(source.id)
    for key, env_name in SOURCE_CREDENTIAL_KEYS.get(source.adapter, {}).items():
        value = os.environ.get(f"{prefix}_{env_name}") or os.environ.get(env_name)
        if value:
            settings[key] = value
    return settings


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
    config_path: Path | None = None,
) -> DocstreamConfig:
    """Load and return a merged *DocstreamConfig*.

    Applies layers in order: global → per-project → env vars.

    Args:
        project_dir: Directory to search for *docstream.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).
        config_path: Explicit project config file; overrides *project_dir* lookup.

    Returns:
        Fully merged *DocstreamConfig* with env var overrides applied.

    Raises:
        ConfigError: If the global config contains credential-like fields, or
            if a source entry is malformed.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = config_path if config_path is not None else search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        if not isinstance(raw_project, dict):
            raise ConfigError(f"'{project_cfg_path}' must contain a YAML mapping.")
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)
    elif config_path is not None:
        raise ConfigError(f"Config file not found: '{config_path}'")

    cfg = _cfg_from_dict(merged)
    _validate_sources(cfg.sources)
    if cfg.scheduler.batch_schedule:
        parse_interval(cfg.scheduler.batch_schedule)

    if cfg.docs.kind not in ("git", "directory"):
        raise ConfigError(f"docs.kind must be 'git' or 'directory', got '{cfg.docs.kind}'")

    return _apply_env_overrides(cfg)


def write_project_config(target: Path) -> Path:
    """Write a commented starter *docstream.yaml* to *target* if it does not exist."""
    if target.exists():
        return target
    content = (
        "# docstream project configuration.\n"
        "# Credentials come from the environment, e.g.:\n"
        "#   export ZULIP_API_KEY=...   or   export TEAM_ZULIP_ZULIP_API_KEY=...\n"
        "#   export TELEGRAM_BOT_TOKEN=...\n"
        "\n"
        "sources:\n"
        "  - id: team-zulip\n"
        "    adapter: zulip\n"
        "    enabled: false\n"
        "    schedule: 15m\n"
        "    config:\n"
        "      site: https://example.zulipchat.com\n"
        "      streams: [general]\n"
        "      batch_size: 100\n"
        "\n"
        "scheduler:\n"
        "  max_concurrent_sources: 3\n"
        "\n"
        "batch:\n"
        "  window_hours: 24\n"
        "  max_batch_size: 30\n"
        "  conversation_gap_minutes: 15\n"
        "\n"
        "models:\n"
        "  classification: openai/gpt-4o-mini\n"
        "  proposal: openai/gpt-4o\n"
        "  embedding: openai/text-embedding-3-small\n"
        "  cache: true\n"
        "\n"
        "docs:\n"
        "  path: docs\n"
        "  kind: directory\n"
    )
    target.write_text(content, encoding="utf-8")
    return target
