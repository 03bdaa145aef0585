"""
config/settings.py — RelayMind Runtime Settings

config.yaml supplies structure and tunables, the environment supplies API keys.
Every section is a pydantic model, so bad values fail at load time.

  - Provider families (gemini, openrouter, groq, openai) each declare a kind,
    a base URL and a model per tier; credentials come only from the
    environment as <FAMILY>_API_KEY plus numbered <FAMILY>_API_KEY_1..15
  - Router, credential pool, cache and executor tunables live in their own
    sections and are validated at parse time
  - validate_all() checks cross-section consistency (routing targets exist,
    every family has a base URL, at least one credential is set) and
    reports all problems in one ConfigError
  - load_settings() reads --config, then $RELAYMIND_CONFIG, then the default path
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_KINDS = {"gemini", "openai_compatible"}
_VALID_TIERS = {"fast", "balanced", "advanced", "code", "reasoning", "image"}
_MAX_NUMBERED_KEYS = 15


def _collect_keys(env_name: str, environ: Optional[dict[str, str]] = None) -> list[str]:
    """
    Gather <ENV_NAME> and <ENV_NAME>_1 .. <ENV_NAME>_15 from the environment.
    Blank values are skipped and duplicates collapse to one credential.
    """
    env = os.environ if environ is None else environ
    found: list[str] = []
    for i in range(1, _MAX_NUMBERED_KEYS + 1):
        value = (env.get(f"{env_name}_{i}") or "").strip()
        if value and value not in found:
            found.append(value)
    base = (env.get(env_name) or "").strip()
    if base and base not in found:
        found.append(base)
    return found


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class ProviderFamilyConfig(BaseModel):
    """One provider family: how to reach it and which model serves each tier."""
    enabled: bool = True
    kind: str = "openai_compatible"
    base_url: Optional[str] = None
    api_key_env: str = ""
    default_model: str = ""
    models: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 60.0

    @field_validator("kind")
    @classmethod
    def _known_kind(cls, v: str) -> str:
        if v not in _VALID_KINDS:
            raise ValueError(
                f"providers.*.kind must be one of {sorted(_VALID_KINDS)}, got '{v}'"
            )
        return v

    @field_validator("models")
    @classmethod
    def _known_tiers(cls, v: dict[str, str]) -> dict[str, str]:
        bad = [k for k in v if k.lower() not in _VALID_TIERS]
        if bad:
            raise ValueError(
                f"providers.*.models has unknown tiers: {bad}. "
                f"Valid tiers: {sorted(_VALID_TIERS)}"
            )
        return {k.lower(): m for k, m in v.items()}


def _default_providers() -> dict[str, ProviderFamilyConfig]:
    return {
        "gemini": ProviderFamilyConfig(
            kind="gemini",
            api_key_env="GEMINI_API_KEY",
            default_model="gemini-2.5-flash",
            models={
                "fast": "gemini-2.5-flash-lite",
                "balanced": "gemini-2.5-flash",
                "advanced": "gemini-2.5-pro",
                "code": "gemini-2.5-flash",
                "reasoning": "gemini-2.5-pro",
                "image": "gemini-2.5-flash-image",
            },
        ),
        "openrouter": ProviderFamilyConfig(
            kind="openai_compatible",
            base_url="https://openrouter.ai/api/v1",
            api_key_env="OPENROUTER_API_KEY",
            default_model="google/gemma-3-27b-it:free",
            models={
                "fast": "meta-llama/llama-3.3-70b-instruct:free",
                "balanced": "google/gemma-3-27b-it:free",
                "code": "qwen/qwen3-coder:free",
                "reasoning": "deepseek/deepseek-r1-0528:free",
                "advanced": "openai/gpt-oss-120b:free",
            },
            headers={"HTTP-Referer": "https://github.com/relaymind", "X-Title": "RelayMind"},
        ),
        "groq": ProviderFamilyConfig(
            kind="openai_compatible",
            base_url="https://api.groq.com/openai/v1",
            api_key_env="GROQ_API_KEY",
            default_model="llama-3.3-70b-versatile",
            models={
                "fast": "llama-3.1-8b-instant",
                "balanced": "llama-3.3-70b-versatile",
            },
        ),
        "openai": ProviderFamilyConfig(
            enabled=False,
            kind="openai_compatible",
            api_key_env="OPENAI_API_KEY",
            default_model="gpt-4o-mini",
            models={"fast": "gpt-4o-mini", "balanced": "gpt-4o-mini", "advanced": "gpt-4o"},
        ),
    }


class RouterConfig(BaseModel):
    primary_family: str = "gemini"
    fallback_order: list[str] = Field(default_factory=lambda: ["gemini", "openrouter", "groq"])
    max_attempts_per_family: int = 4
    review_non_primary: bool = True
    review_tier: str = "fast"
    max_tokens: int = 4000
    temperature: float = 0.7

    @field_validator("max_attempts_per_family")
    @classmethod
    def _positive_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("router.max_attempts_per_family must be >= 1")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("router.max_tokens must be >= 1")
        return v

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("router.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("review_tier")
    @classmethod
    def _known_review_tier(cls, v: str) -> str:
        if v.lower() not in _VALID_TIERS:
            raise ValueError(f"router.review_tier '{v}' is not a known tier")
        return v.lower()


class CredentialConfig(BaseModel):
    """Cooldown backoff: min(2**consecutive_failures, backoff_cap) * base_delay_seconds."""
    base_delay_seconds: float = 10.0
    backoff_cap: int = 32
    failure_threshold: int = 3
    daily_quota: Optional[int] = None

    @field_validator("base_delay_seconds")
    @classmethod
    def _positive_delay(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("credentials.base_delay_seconds must be > 0")
        return v

    @field_validator("backoff_cap", "failure_threshold")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("credentials.backoff_cap and failure_threshold must be >= 1")
        return v

    @field_validator("daily_quota")
    @classmethod
    def _positive_quota(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("credentials.daily_quota must be >= 1 or null")
        return v


class CacheConfig(BaseModel):
    enabled: bool = True
    ttl_seconds: float = 3600.0
    similarity_threshold: float = 0.75
    max_entries: int = 512

    @field_validator("similarity_threshold")
    @classmethod
    def _valid_threshold(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            raise ValueError("cache.similarity_threshold must be in (0.0, 1.0]")
        return v

    @field_validator("ttl_seconds")
    @classmethod
    def _positive_ttl(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("cache.ttl_seconds must be > 0")
        return v

    @field_validator("max_entries")
    @classmethod
    def _positive_entries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("cache.max_entries must be >= 1")
        return v


class ExecutorConfig(BaseModel):
    step_delay_seconds: float = 1.0
    default_cycle_depth: int = 1
    max_clarification_rounds: int = 2
    clarification_timeout_seconds: float = 900.0
    history_limit: int = 3
    planner_max_tokens: int = 2048

    @field_validator("step_delay_seconds")
    @classmethod
    def _non_negative_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("executor.step_delay_seconds must be >= 0")
        return v

    @field_validator("default_cycle_depth")
    @classmethod
    def _valid_depth(cls, v: int) -> int:
        if not (1 <= v <= 5):
            raise ValueError("executor.default_cycle_depth must be between 1 and 5")
        return v

    @field_validator("max_clarification_rounds")
    @classmethod
    def _non_negative_rounds(cls, v: int) -> int:
        if v < 0:
            raise ValueError("executor.max_clarification_rounds must be >= 0")
        return v

    @field_validator("clarification_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("executor.clarification_timeout_seconds must be > 0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────


class Settings(BaseSettings):
    """
    RelayMind runtime settings.

    Priority (highest to lowest):
      1. config.yaml (passed in by load_settings as init kwargs)
      2. Environment variables, SECTION__FIELD
      3. .env file
      4. Field defaults

    Env vars therefore only fill what config.yaml leaves out. API keys are
    never read from config.yaml, see credentials_for().
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Structured config (from config.yaml) --------------------------------
    providers: dict[str, ProviderFamilyConfig] = Field(default_factory=_default_providers)
    router: RouterConfig = Field(default_factory=RouterConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("providers", mode="before")
    @classmethod
    def _merge_providers(cls, v: Any) -> Any:
        """YAML entries override the built-in family defaults field by field."""
        if not isinstance(v, dict):
            return v
        merged: dict[str, Any] = {
            name: cfg.model_dump() for name, cfg in _default_providers().items()
        }
        for name, override in v.items():
            if isinstance(override, ProviderFamilyConfig):
                merged[name] = override.model_dump()
            elif isinstance(override, dict):
                merged[name] = {**merged.get(name, {}), **override}
        return merged

    @field_validator("router", mode="before")
    @classmethod
    def _coerce_router(cls, v: Any) -> Any:
        return RouterConfig(**v) if isinstance(v, dict) else v

    @field_validator("credentials", mode="before")
    @classmethod
    def _coerce_credentials(cls, v: Any) -> Any:
        return CredentialConfig(**v) if isinstance(v, dict) else v

    @field_validator("cache", mode="before")
    @classmethod
    def _coerce_cache(cls, v: Any) -> Any:
        return CacheConfig(**v) if isinstance(v, dict) else v

    @field_validator("executor", mode="before")
    @classmethod
    def _coerce_executor(cls, v: Any) -> Any:
        return ExecutorConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def enabled_families(self) -> list[str]:
        return [name for name, cfg in self.providers.items() if cfg.enabled]

    def credentials_for(self, family: str) -> list[str]:
        """All API keys configured for a family, numbered keys first."""
        cfg = self.providers.get(family)
        if cfg is None or not cfg.enabled:
            return []
        env_name = cfg.api_key_env or f"{family.upper()}_API_KEY"
        return _collect_keys(env_name)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems (router order naming unknown
        families, missing credentials everywhere, tier models missing).
        """
        errors: list[str] = []

        # ── Router references real, enabled families ─────────────────────────
        enabled = set(self.enabled_families)
        if self.router.primary_family not in self.providers:
            errors.append(
                f"router.primary_family '{self.router.primary_family}' is not "
                f"declared under providers."
            )
        for name in self.router.fallback_order:
            if name not in self.providers:
                errors.append(
                    f"router.fallback_order names unknown provider family '{name}'."
                )
        if not any(name in enabled for name in self.router.fallback_order):
            errors.append("router.fallback_order contains no enabled provider family.")

        # ── Every enabled family has a model to call ─────────────────────────
        for name in sorted(enabled):
            cfg = self.providers[name]
            if not cfg.default_model and not cfg.models:
                errors.append(
                    f"providers.{name} has neither default_model nor models set."
                )
            if cfg.kind == "openai_compatible" and name != "openai" and not cfg.base_url:
                errors.append(f"providers.{name} (openai_compatible) requires base_url.")

        # ── At least one credential somewhere ────────────────────────────────
        if not any(self.credentials_for(name) for name in self.router.fallback_order):
            env_names = [
                self.providers[n].api_key_env or f"{n.upper()}_API_KEY"
                for n in self.router.fallback_order
                if n in self.providers
            ]
            errors.append(
                "No provider credentials found. Set at least one of "
                f"{', '.join(env_names)} (or numbered variants like "
                f"{env_names[0] if env_names else 'GEMINI_API_KEY'}_1) in your .env file."
            )

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nRelayMind startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Edit config/config.yaml or set the missing *_API_KEY variables, then retry.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {"providers", "router", "credentials", "cache", "executor", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Config file lookup order:
      1. config_path (the --config flag)
      2. RELAYMIND_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("RELAYMIND_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    return Settings(**init_kwargs)

