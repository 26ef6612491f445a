from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class JobsConfig:
    stale_after_seconds: int
    poll_seconds: int


@dataclass(frozen=True)
class ModelPrice:
    input_per_million: float
    output_per_million: float


@dataclass(frozen=True)
class LLMConfig:
    provider: str
    base_url: str
    model: str
    timeout_seconds: int
    max_tokens: int
    temperature: float
    prices: dict[str, ModelPrice]


@dataclass(frozen=True)
class StageConfig:
    """Per-stage persona. A blank prompt or model, or zero max_tokens, keeps the default."""

    system_prompt: str
    model: str
    temperature: float
    max_tokens: int


@dataclass(frozen=True)
class PipelineConfig:
    default_max_iterations: int
    min_passing_score: int
    rate_limit_retries: int
    timeout_retries: int
    backoff_seconds: float
    max_backoff_seconds: float
    default_word_count: int
    stages: dict[str, StageConfig] = field(default_factory=dict)


@dataclass(frozen=True)
class EnrichmentConfig:
    default_batch_size: int
    timeout_seconds: int
    endpoints: dict[str, str]


@dataclass(frozen=True)
class PublishingConfig:
    default_status: str
    default_template: str
    max_related_keywords: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    jobs: JobsConfig
    llm: LLMConfig
    pipeline: PipelineConfig
    enrichment: EnrichmentConfig
    publishing: PublishingConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "pagesmith",
        "timezone": "UTC",
    },
    "jobs": {
        "stale_after_seconds": 900,
        "poll_seconds": 5,
    },
    "llm": {
        "provider": "anthropic",
        "base_url": "",
        "model": "claude-sonnet-4-20250514",
        "timeout_seconds": 120,
        "max_tokens": 4096,
        "temperature": 0.7,
        # USD per 1M tokens
        "prices": {
            "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
            "claude-3-5-haiku-20241022": {"input": 0.8, "output": 4.0},
            "gpt-4o": {"input": 2.5, "output": 10.0},
            "gpt-4o-mini": {"input": 0.15, "output": 0.6},
        },
    },
    "pipeline": {
        "default_max_iterations": 3,
        "min_passing_score": 70,
        "rate_limit_retries": 3,
        "timeout_retries": 1,
        "backoff_seconds": 2.0,
        "max_backoff_seconds": 30.0,
        "default_word_count": 1500,
        "stages": {
            "research": {"system_prompt": "", "model": "", "temperature": 0.3, "max_tokens": 0},
            "draft": {"system_prompt": "", "model": "", "temperature": 0.7, "max_tokens": 0},
            "critique": {"system_prompt": "", "model": "", "temperature": 0.2, "max_tokens": 0},
            "finalize": {"system_prompt": "", "model": "", "temperature": 0.2, "max_tokens": 0},
        },
    },
    "enrichment": {
        "default_batch_size": 10,
        "timeout_seconds": 30,
        "endpoints": {
            "contractor_enrichment": "",
            "review_enrichment": "",
            "image_enrichment": "",
        },
    },
    "publishing": {
        "default_status": "draft",
        "default_template": "article",
        "max_related_keywords": 5,
    },
}

CONFIG_KEY = "config.runtime"

# Maps whose keys are user-defined; only their values are type-checked.
_OPEN_MAPS = {"config.runtime.llm.prices", "config.runtime.enrichment.endpoints"}


def get_state_db_path() -> str:
    data_dir = os.environ.get("PS_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


def get_llm_api_key() -> str | None:
    return os.environ.get("PS_LLM_API_KEY") or None


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _initial_config())
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    return errors


def load_config_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def _initial_config() -> dict[str, Any]:
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = os.environ.get("PS_CONFIG_PATH")
    if path:
        _deep_merge(cfg, load_config_file(path))
    return cfg


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> None:
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        child = f"{path}.{key}"
        if child in _OPEN_MAPS:
            _validate_open_map(value[key], default, child, errors)
            continue
        _validate_value(value[key], default, child, errors)


def _validate_open_map(value: Any, default: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    sample = next(iter(default.values()), None)
    for key, item in value.items():
        _validate_value(item, sample, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    jobs_cfg = cfg.get("jobs") or {}
    llm_cfg = cfg.get("llm") or {}
    pipeline_cfg = cfg.get("pipeline") or {}
    enrichment_cfg = cfg.get("enrichment") or {}
    publishing_cfg = cfg.get("publishing") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )
    jobs = JobsConfig(
        stale_after_seconds=int(jobs_cfg.get("stale_after_seconds")),
        poll_seconds=int(jobs_cfg.get("poll_seconds")),
    )

    prices = {
        str(model): ModelPrice(
            input_per_million=float(price.get("input", 0.0)),
            output_per_million=float(price.get("output", 0.0)),
        )
        for model, price in (llm_cfg.get("prices") or {}).items()
    }
    llm = LLMConfig(
        provider=str(llm_cfg.get("provider")),
        base_url=str(llm_cfg.get("base_url") or ""),
        model=str(llm_cfg.get("model")),
        timeout_seconds=int(llm_cfg.get("timeout_seconds")),
        max_tokens=int(llm_cfg.get("max_tokens")),
        temperature=float(llm_cfg.get("temperature")),
        prices=prices,
    )

    pipeline = PipelineConfig(
        default_max_iterations=int(pipeline_cfg.get("default_max_iterations")),
        min_passing_score=int(pipeline_cfg.get("min_passing_score")),
        rate_limit_retries=int(pipeline_cfg.get("rate_limit_retries")),
        timeout_retries=int(pipeline_cfg.get("timeout_retries")),
        backoff_seconds=float(pipeline_cfg.get("backoff_seconds")),
        max_backoff_seconds=float(pipeline_cfg.get("max_backoff_seconds")),
        default_word_count=int(pipeline_cfg.get("default_word_count")),
        stages={
            str(stage): StageConfig(
                system_prompt=str(stage_cfg.get("system_prompt") or ""),
                model=str(stage_cfg.get("model") or ""),
                temperature=float(stage_cfg.get("temperature")),
                max_tokens=int(stage_cfg.get("max_tokens") or 0),
            )
            for stage, stage_cfg in (pipeline_cfg.get("stages") or {}).items()
        },
    )
    if not 1 <= pipeline.default_max_iterations <= 10:
        raise ConfigError("pipeline.default_max_iterations must be between 1 and 10")
    for stage, stage_config in pipeline.stages.items():
        if not 0.0 <= stage_config.temperature <= 2.0:
            raise ConfigError(f"pipeline.stages.{stage}.temperature must be between 0 and 2")
        if stage_config.max_tokens < 0:
            raise ConfigError(f"pipeline.stages.{stage}.max_tokens must not be negative")

    enrichment = EnrichmentConfig(
        default_batch_size=int(enrichment_cfg.get("default_batch_size")),
        timeout_seconds=int(enrichment_cfg.get("timeout_seconds")),
        endpoints={str(k): str(v) for k, v in (enrichment_cfg.get("endpoints") or {}).items()},
    )
    publishing = PublishingConfig(
        default_status=str(publishing_cfg.get("default_status")),
        default_template=str(publishing_cfg.get("default_template")),
        max_related_keywords=int(publishing_cfg.get("max_related_keywords")),
    )
    return Config(
        app=app,
        jobs=jobs,
        llm=llm,
        pipeline=pipeline,
        enrichment=enrichment,
        publishing=publishing,
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
