"""
Settings loader.

Reads config/settings.yaml (or an explicit path) into the dataclass
configuration used by the controller, governor and worker pool.
Missing sections keep their defaults; unknown keys are logged and ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Dict, Any, Set, Type, TypeVar
import yaml
from loguru import logger

from humanblur.core.contracts import (
    PipelineConfig,
    PerformancePolicy,
    WorkerPoolSettings,
)

DEFAULT_SETTINGS_PATH = Path(__file__).resolve().parents[2] / "config" / "settings.yaml"

T = TypeVar("T")


@dataclass
class LoggingSettings:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class BlurSettings:
    """Everything the application needs to build a controller."""
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    policy: PerformancePolicy = field(default_factory=PerformancePolicy)
    workers: WorkerPoolSettings = field(default_factory=WorkerPoolSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    prefer_gpu: Optional[bool] = None  # None = decide from capabilities
    # "section.key" entries the settings source set explicitly
    explicit_keys: Set[str] = field(default_factory=set)

    def is_explicit(self, key: str) -> bool:
        return key in self.explicit_keys


def _build_section(
    cls: Type[T],
    section: str,
    values: Optional[Dict[str, Any]],
    explicit: Set[str],
) -> T:
    if not values:
        return cls()
    if not isinstance(values, dict):
        raise ValueError(f"Settings section '{section}' must be a mapping")

    known = {f.name for f in fields(cls)}
    accepted = {}
    for key, value in values.items():
        if key in known:
            accepted[key] = value
            explicit.add(f"{section}.{key}")
        else:
            logger.warning(f"Ignoring unknown setting {section}.{key}")

    return cls(**accepted)


def settings_from_dict(data: Optional[Dict[str, Any]]) -> BlurSettings:
    """Build settings from an already-parsed mapping."""
    data = data or {}
    explicit: Set[str] = set()

    pipeline = _build_section(PipelineConfig, "pipeline", data.get("pipeline"), explicit)
    if pipeline.fallback_mode:
        logger.warning("pipeline.fallback_mode is controller-owned; resetting to false")
        pipeline.fallback_mode = False
    explicit.discard("pipeline.fallback_mode")

    prefer_gpu = data.get("prefer_gpu")
    if prefer_gpu is not None:
        explicit.add("prefer_gpu")

    return BlurSettings(
        pipeline=pipeline,
        policy=_build_section(PerformancePolicy, "policy", data.get("policy"), explicit),
        workers=_build_section(WorkerPoolSettings, "workers", data.get("workers"), explicit),
        logging=_build_section(LoggingSettings, "logging", data.get("logging"), explicit),
        prefer_gpu=prefer_gpu,
        explicit_keys=explicit,
    )


def load_settings(config_path: Optional[str] = None) -> BlurSettings:
    """Load settings from file, falling back to the bundled defaults."""
    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            return settings_from_dict(yaml.safe_load(f))

    if config_path:
        logger.warning(f"Settings file not found: {config_path}, using defaults")

    if DEFAULT_SETTINGS_PATH.exists():
        with open(DEFAULT_SETTINGS_PATH) as f:
            return settings_from_dict(yaml.safe_load(f))

    return BlurSettings()
