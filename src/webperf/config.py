"""Configuration management backed by pydantic-settings plus an optional Python config module."""

from __future__ import annotations

import importlib.util
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Awaitable, Callable, ClassVar, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = logging.getLogger(__name__)

SETTINGS_FILE_NAMES = ("webperf-settings.json", ".webperf-settings.json")
DEFAULT_URL = "https://example.com"
DEFAULT_RUNS = 5

OverrideFn = Callable[[Any], Awaitable[None]]
OverrideScriptFn = Callable[[], str]


class ConfigError(RuntimeError):
    """Raised when configuration cannot be resolved into a usable value."""


class Service(BaseModel):
    """A declared background process the target depends on."""

    model_config = ConfigDict(frozen=True)

    id: str
    cwd: Path
    command: str
    port: int = Field(gt=0, lt=65536)


class TestScenario(BaseModel):
    """A named, reusable measurement job."""

    __test__: ClassVar[bool] = False

    model_config = ConfigDict(frozen=True)

    id: str
    url: str
    note: str = ""
    runs: Optional[int] = Field(default=None, ge=0)
    apply_overrides: bool = False
    enabled: bool = True
    tags: Tuple[str, ...] = ()


def find_settings_path() -> Optional[Path]:
    """Return the first settings file that exists, checked in precedence order."""
    candidates: List[Path] = []
    explicit = os.getenv("WEBPERF_SETTINGS_PATH")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend(Path.cwd() / name for name in SETTINGS_FILE_NAMES)
    candidates.append(Path.home() / ".webperf-settings.json")
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


class Settings(BaseSettings):
    """User settings loaded from init kwargs, environment, .env, and a JSON settings file."""

    model_config = SettingsConfigDict(
        env_prefix="WEBPERF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # External Python config module (services, override hooks)
    config_path: Optional[Path] = None

    # Measurement defaults
    default_runs: int = Field(default=DEFAULT_RUNS, ge=0)
    default_url: str = DEFAULT_URL
    note_prefix: str = ""
    run_pause_seconds: float = Field(default=2.0, ge=0)

    # Storage
    results_path: Path = Path("./results")
    jsonl_log_path: Optional[Path] = None
    registry_path: Path = Field(default_factory=lambda: Path.home() / ".webperf" / "running-pids.json")

    # Batch
    scenarios: List[TestScenario] = Field(default_factory=list)
    max_concurrency: int = Field(default=1, ge=1)

    # Services
    services: List[Service] = Field(default_factory=list)
    service_ready_timeout: float = Field(default=120.0, gt=0)
    service_stabilize_seconds: float = Field(default=5.0, ge=0)

    # Tooling
    chrome_path: Optional[str] = None
    lighthouse_path: str = "lighthouse"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("scenarios")
    @classmethod
    def _unique_scenario_ids(cls, scenarios: List[TestScenario]) -> List[TestScenario]:
        seen: set[str] = set()
        for scenario in scenarios:
            if scenario.id in seen:
                raise ValueError(f"duplicate scenario id: {scenario.id}")
            seen.add(scenario.id)
        return scenarios

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        sources: List[PydanticBaseSettingsSource] = [init_settings, env_settings, dotenv_settings]
        settings_file = find_settings_path()
        if settings_file is not None:
            sources.append(JsonConfigSettingsSource(settings_cls, json_file=settings_file))
        sources.append(file_secret_settings)
        return tuple(sources)

    @property
    def measurements_log_path(self) -> Path:
        """Global append-only measurement log."""
        if self.jsonl_log_path is not None:
            return self.jsonl_log_path
        return self.results_path / "measurements.jsonl"


def load_settings(**overrides: Any) -> Settings:
    """Build settings, turning validation problems into ConfigError."""
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc


@dataclass
class WebperfConfig:
    """Resolved tool configuration with optional override capabilities.

    ``apply_overrides`` receives a loaded page, e.g.
    ``await page.evaluate("localStorage.setItem('flag', '1')")``.
    """

    services: List[Service] = field(default_factory=list)
    default_url: str = DEFAULT_URL
    default_runs: int = DEFAULT_RUNS
    apply_overrides: Optional[OverrideFn] = None
    get_override_script: Optional[OverrideScriptFn] = None


def _load_config_module(path: Path) -> ModuleType:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    spec = importlib.util.spec_from_file_location("webperf_user_config", path)
    if spec is None or spec.loader is None:
        raise ConfigError(f"Config file is not an importable Python module: {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:  # noqa: BLE001 - user code
        raise ConfigError(f"Failed to load config {path}: {exc}") from exc
    return module


def _coerce_services(raw: Any, source: Path) -> List[Service]:
    try:
        return [item if isinstance(item, Service) else Service.model_validate(item) for item in raw]
    except (TypeError, ValidationError) as exc:
        raise ConfigError(f"Invalid SERVICES in {source}: {exc}") from exc


def load_config(settings: Settings) -> WebperfConfig:
    """Resolve the tool configuration: explicit settings > config module > defaults."""
    config = WebperfConfig(
        services=list(settings.services),
        default_url=settings.default_url,
        default_runs=settings.default_runs,
    )
    if settings.config_path is None:
        logger.debug("No external config module; running in measure-only mode")
        return config

    path = settings.config_path.expanduser()
    module = _load_config_module(path)
    logger.info("Config loaded from %s", path)
    explicit = settings.model_fields_set

    module_services = getattr(module, "SERVICES", None)
    if module_services is not None and "services" not in explicit:
        config.services = _coerce_services(module_services, path)

    module_url = getattr(module, "DEFAULT_URL", None)
    if module_url and "default_url" not in explicit:
        config.default_url = str(module_url)

    module_runs = getattr(module, "DEFAULT_RUNS", None)
    if module_runs is not None and "default_runs" not in explicit:
        config.default_runs = int(module_runs)

    apply_overrides = getattr(module, "apply_overrides", None)
    if callable(apply_overrides):
        config.apply_overrides = apply_overrides

    get_override_script = getattr(module, "get_override_script", None)
    if callable(get_override_script):
        config.get_override_script = get_override_script

    return config


def create_default_settings(path: Optional[Path] = None) -> Path:
    """Write a template settings file and return its location."""
    settings_path = path or Path.cwd() / SETTINGS_FILE_NAMES[0]
    template = {
        "_README": "Personal settings; keep project-specific config outside version control",
        "config_path": None,
        "default_runs": DEFAULT_RUNS,
        "default_url": DEFAULT_URL,
        "results_path": "./results",
        "jsonl_log_path": "./results/measurements.jsonl",
        "note_prefix": "",
        "max_concurrency": 1,
        "scenarios": [],
    }
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with settings_path.open("w", encoding="utf-8") as handle:
        json.dump(template, handle, indent=2)
        handle.write("\n")
    logger.info("Created settings file %s", settings_path)
    return settings_path
