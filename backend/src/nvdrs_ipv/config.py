"""
Configuration object for the IPV detection pipeline.

The YAML file is merged over ``defaults.default_config()`` and validated into
a ``Config`` instance. Everything the core needs (endpoint, retry policy,
batch size, reconciliation weights) travels through this object; the only
environment lookup is ``llm.api_key_env``, resolved here at load time.
"""

import copy
import os

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from nvdrs_ipv.defaults import default_config

NARRATIVE_TYPES = ("primary", "secondary")


class LLMSettings(BaseModel):
    api_url: str
    model: str
    temperature: float = Field(0.1, ge=0.0, le=1.0)
    max_tokens: int | None = Field(None, gt=0)
    timeout_seconds: float = Field(30, gt=0)
    retry_attempts: int = Field(3, ge=1)
    retry_base_delay_seconds: float = Field(1.0, ge=0)
    rate_limit_requests: int | None = Field(None, gt=0)
    rate_limit_window_seconds: float = Field(60.0, gt=0)
    api_key: str | None = None
    api_key_env: str | None = None


class PromptSettings(BaseModel):
    system_prompt: str = Field(min_length=1)
    user_template: str = Field(min_length=1)
    version_tag: str | None = None
    indicator_fields: list[str] = []

    @field_validator("user_template")
    @classmethod
    def _has_placeholder(cls, value: str) -> str:
        if "{narrative}" not in value:
            raise ValueError("user_template must contain the {narrative} placeholder")
        return value


class PipelineSettings(BaseModel):
    batch_size: int = Field(100, ge=1)
    max_items: int | None = Field(None, ge=0)
    max_concurrency: int = Field(1, ge=1)
    min_narrative_chars: int = Field(10, ge=1)


class ReconciliationSettings(BaseModel):
    """Weights and thresholds for combining the two narrative sources.

    No defaults; every config file states them.
    """

    source_weights: dict[str, float]
    base_floor: float = Field(ge=0.0, le=1.0)
    spread_weight: float = Field(ge=0.0, le=1.0)
    confidence_gap_threshold: float = Field(ge=0.0, le=1.0)

    @field_validator("source_weights")
    @classmethod
    def _check_weights(cls, weights: dict[str, float]) -> dict[str, float]:
        missing = [t for t in NARRATIVE_TYPES if t not in weights]
        if missing:
            raise ValueError(f"source_weights missing entries for: {', '.join(missing)}")
        unknown = sorted(set(weights) - set(NARRATIVE_TYPES))
        if unknown:
            raise ValueError(f"source_weights has unknown narrative types: {', '.join(unknown)}")
        for name, value in weights.items():
            if value < 0:
                raise ValueError(f"source weight for {name} must be >= 0")
        return weights


class StorageSettings(BaseModel):
    database_url: str


class ExperimentSettings(BaseModel):
    name: str = Field(min_length=1)
    dataset_name: str | None = None
    notes: str | None = None


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Config(BaseModel):
    llm: LLMSettings
    prompt: PromptSettings
    pipeline: PipelineSettings = PipelineSettings()
    reconciliation: ReconciliationSettings
    storage: StorageSettings
    experiment: ExperimentSettings
    logging: LoggingSettings = LoggingSettings()

    @model_validator(mode="after")
    def _resolve_api_key(self):
        if self.llm.api_key is None and self.llm.api_key_env:
            self.llm.api_key = os.environ.get(self.llm.api_key_env)
        return self


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_config(overrides: dict) -> Config:
    """Validate a plain dict (merged over the defaults) into a Config."""
    return Config.model_validate(_deep_merge(default_config(), overrides or {}))


def load_config(config_path: str = "config.yaml") -> Config:
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return build_config(raw)
