"""Load settings.yaml into typed dataclasses. Validates API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"
_USER_SETTINGS_PATH = Path.home() / ".eklavya" / "settings.yaml"
_USER_SETTINGS_ENV = "EKLAVYA_SETTINGS"

# Sections a user settings file may overlay on the packaged defaults
_OVERLAY_SECTIONS = ("defaults", "inbox", "generation", "retry", "catalog")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or unusable for a run."""


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    base_url: str | None = None


@dataclass
class TurnParams:
    max_tokens: int
    temperature: float


@dataclass
class GenerationConfig:
    opening: TurnParams
    summary: TurnParams
    synthesis: TurnParams


@dataclass
class RetryConfig:
    max_retries: int
    base_delay_sec: float


@dataclass
class InboxConfig:
    dir: Path
    archive_dir: Path


@dataclass
class CatalogConfig:
    personas_file: Path | None = None
    councils_file: Path | None = None


@dataclass
class DefaultsConfig:
    provider: str
    council: str
    min_rounds: int
    max_rounds: int
    stream: bool
    max_tokens_per_turn: int
    sessions_dir: Path
    output_dir: Path


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    generation: GenerationConfig
    retry: RetryConfig
    inbox: InboxConfig
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    available_providers: set[str] = field(default_factory=set)


@dataclass
class RunOptions:
    """Validated per-run inputs handed to the orchestrator."""

    provider: str
    rounds: int | None
    stream: bool
    max_tokens_per_turn: int
    council_id: str
    persona_ids: list[str] | None = None
    context: str | None = None


def _expand(path_value: str | None) -> Path | None:
    if not path_value:
        return None
    return Path(os.path.expanduser(str(path_value)))


def _read_yaml(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Settings file must contain a mapping: {path}")
    return raw


def _overlay(base: dict, extra: dict) -> dict:
    """Merge a user settings mapping onto the packaged one, section by section."""
    merged = dict(base)
    for section in _OVERLAY_SECTIONS:
        if section in extra:
            merged[section] = {**base.get(section, {}), **(extra[section] or {})}
    for name, model_raw in (extra.get("models") or {}).items():
        merged.setdefault("models", {})
        merged["models"][name] = {**merged["models"].get(name, {}), **model_raw}
    return merged


def _turn_params(raw: dict) -> TurnParams:
    return TurnParams(max_tokens=int(raw["max_tokens"]), temperature=float(raw["temperature"]))


def load_config(
    settings_path: Path = _SETTINGS_PATH,
    user_settings_path: Path | None = None,
) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    The user settings file (``$EKLAVYA_SETTINGS`` or ``~/.eklavya/settings.yaml``
    when ``user_settings_path`` is not given) is overlaid when it exists.

    Raises FileNotFoundError if the packaged settings file is missing and
    ConfigError if a required key is absent or has the wrong type.
    Logs missing API keys but does not raise — callers check available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    raw = _read_yaml(settings_path)

    if user_settings_path is None:
        env_path = os.environ.get(_USER_SETTINGS_ENV, "").strip()
        user_settings_path = Path(env_path) if env_path else _USER_SETTINGS_PATH
    if user_settings_path.exists():
        logger.debug("Overlaying user settings from %s", user_settings_path)
        raw = _overlay(raw, _read_yaml(user_settings_path))

    try:
        defaults_raw = raw["defaults"]
        defaults = DefaultsConfig(
            provider=str(defaults_raw["provider"]),
            council=str(defaults_raw["council"]),
            min_rounds=int(defaults_raw.get("min_rounds", 1)),
            max_rounds=int(defaults_raw["max_rounds"]),
            stream=bool(defaults_raw.get("stream", True)),
            max_tokens_per_turn=int(defaults_raw["max_tokens_per_turn"]),
            sessions_dir=_expand(defaults_raw["sessions_dir"]),
            output_dir=Path(defaults_raw.get("output_dir", "./output")),
        )

        generation_raw = raw["generation"]
        generation = GenerationConfig(
            opening=_turn_params(generation_raw["opening"]),
            summary=_turn_params(generation_raw["summary"]),
            synthesis=_turn_params(generation_raw["synthesis"]),
        )

        retry_raw = raw.get("retry", {})
        retry = RetryConfig(
            max_retries=int(retry_raw.get("max_retries", 2)),
            base_delay_sec=float(retry_raw.get("base_delay_sec", 1.5)),
        )

        inbox_raw = raw.get("inbox", {})
        inbox = InboxConfig(
            dir=Path(inbox_raw.get("dir", "./inbox")),
            archive_dir=Path(inbox_raw.get("archive_dir", "./inbox/archive")),
        )

        catalog_raw = raw.get("catalog") or {}
        catalog = CatalogConfig(
            personas_file=_expand(catalog_raw.get("personas_file")),
            councils_file=_expand(catalog_raw.get("councils_file")),
        )

        models: dict[str, ModelConfig] = {}
        available_providers: set[str] = set()

        for provider_name, model_raw in raw["models"].items():
            model_cfg = ModelConfig(
                name=provider_name,
                sdk=model_raw["sdk"],
                model=model_raw["model"],
                api_key_env=model_raw["api_key_env"],
                timeout_sec=int(model_raw["timeout_sec"]),
                base_url=model_raw.get("base_url"),
            )
            models[provider_name] = model_cfg

            api_key = os.environ.get(model_raw["api_key_env"], "").strip()
            if api_key:
                available_providers.add(provider_name)
                logger.info("Provider available: %s", provider_name)
            else:
                logger.info(
                    "Provider skipped (no API key): %s — set %s in .env",
                    provider_name,
                    model_raw["api_key_env"],
                )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid settings in {settings_path}: {exc!r}") from exc

    if defaults.min_rounds < 1 or defaults.max_rounds < defaults.min_rounds:
        raise ConfigError(
            f"Invalid round bounds: min_rounds={defaults.min_rounds}, max_rounds={defaults.max_rounds}"
        )

    return AppConfig(
        defaults=defaults,
        models=models,
        generation=generation,
        retry=retry,
        inbox=inbox,
        catalog=catalog,
        available_providers=available_providers,
    )


def clamp_rounds(rounds: int, defaults: DefaultsConfig) -> int:
    """Clamp a requested round count into [min_rounds, max_rounds]."""
    return max(defaults.min_rounds, min(defaults.max_rounds, int(rounds)))


def check_provider(config: AppConfig, provider: str) -> None:
    """Raise ConfigError unless ``provider`` is known and has credentials."""
    if provider not in config.models:
        known = ", ".join(sorted(config.models))
        raise ConfigError(f"Unknown provider '{provider}'. Known providers: {known}")
    if provider not in config.available_providers:
        raise ConfigError(
            f"No API key configured for provider '{provider}'. "
            f"Set {config.models[provider].api_key_env} in your environment or .env"
        )


def resolve_run_options(
    config: AppConfig,
    council_id: str | None = None,
    rounds: int | None = None,
    personas: str | list[str] | None = None,
    provider: str | None = None,
    stream: bool | None = None,
    context: str | None = None,
) -> RunOptions:
    """Merge CLI/frontmatter overrides with config defaults and validate them.

    Raises:
        ConfigError: unknown provider, missing credentials, or empty persona list.
    """
    effective_provider = provider or config.defaults.provider
    check_provider(config, effective_provider)

    persona_ids: list[str] | None = None
    if personas:
        if isinstance(personas, str):
            persona_ids = [p.strip() for p in personas.split(",") if p.strip()]
        else:
            persona_ids = [str(p).strip() for p in personas if str(p).strip()]
        if not persona_ids:
            raise ConfigError("Persona override list is empty")

    return RunOptions(
        provider=effective_provider,
        rounds=clamp_rounds(rounds, config.defaults) if rounds is not None else None,
        stream=config.defaults.stream if stream is None else stream,
        max_tokens_per_turn=config.defaults.max_tokens_per_turn,
        council_id=council_id or config.defaults.council,
        persona_ids=persona_ids,
        context=context.strip() if context and context.strip() else None,
    )
