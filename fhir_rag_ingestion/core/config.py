"""
Pipeline configuration management.

Loads per-stage retry policies, concurrency limits and timeouts from a YAML
file and validates them into a PipelineConfig.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from fhir_rag_ingestion.core.retry import RetryPolicy
from fhir_rag_ingestion.observability.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/pipeline.yaml"

STAGE_NAMES = ("chunking", "dispatch", "enrichment", "persistence")


class StageSettings(BaseModel):
    """
    Settings for one pipeline stage.

    Attributes:
        retry: Backoff policy applied to retryable failures in this stage
        max_in_flight: Items a single worker processes at the same time
        operation_timeout: Seconds before a blocking call is treated as transient
        visibility_timeout: Seconds a dequeued message stays hidden from other workers
    """

    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    max_in_flight: int = Field(4, ge=1)
    operation_timeout: float = Field(30.0, gt=0.0)
    visibility_timeout: float = Field(120.0, gt=0.0)


def _default_stages() -> dict[str, StageSettings]:
    return {
        "chunking": StageSettings(retry=RetryPolicy(max_attempts=2, initial_delay=0.5, max_delay=5.0)),
        "dispatch": StageSettings(retry=RetryPolicy(max_attempts=3, initial_delay=0.5, max_delay=10.0)),
        "enrichment": StageSettings(
            retry=RetryPolicy(max_attempts=5, initial_delay=2.0, multiplier=2.0, max_delay=120.0, jitter=0.1),
            max_in_flight=8,
            operation_timeout=60.0,
            visibility_timeout=300.0,
        ),
        "persistence": StageSettings(retry=RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=30.0)),
    }


class PipelineConfig(BaseModel):
    """
    Complete pipeline configuration.

    Attributes:
        topic_prefix: Prefix of every stage topic name
        quality_threshold: Quality scores below this flag the item for review
        max_deliveries: Deliveries after which the transport dead-letters a message
        max_record_bytes: Records larger than this are rejected by the chunker
        poll_interval: Seconds an idle worker sleeps between empty polls
        stages: Per-stage settings keyed by stage name
    """

    topic_prefix: str = Field("fhir-ingest", min_length=1)
    quality_threshold: float = Field(0.5, ge=0.0, le=1.0)
    max_deliveries: int = Field(10, ge=2)
    max_record_bytes: int = Field(5 * 1024 * 1024, ge=1)
    poll_interval: float = Field(1.0, gt=0.0)
    stages: dict[str, StageSettings] = Field(default_factory=_default_stages)

    def stage(self, name: str) -> StageSettings:
        """Settings for `name`, falling back to defaults for unlisted stages."""
        if name not in STAGE_NAMES:
            raise ValueError(f"Unknown stage '{name}'. Must be one of {', '.join(STAGE_NAMES)}")
        return self.stages.get(name) or _default_stages()[name]

    def retry_policy(self, name: str) -> RetryPolicy:
        return self.stage(name).retry


class PipelineConfigLoader:
    """
    Loads pipeline configuration from YAML.

    Expected YAML format:
    ```yaml
    topic_prefix: fhir-ingest
    quality_threshold: 0.6
    max_deliveries: 10
    stages:
      enrichment:
        max_in_flight: 8
        operation_timeout: 60
        retry:
          max_attempts: 5
          initial_delay: 2.0
          multiplier: 2.0
          max_delay: 120.0
    ```
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the config loader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Pipeline configuration file not found: {config_path}")

    def load(self) -> PipelineConfig:
        """
        Load and validate the configuration.

        Returns:
            PipelineConfig

        Raises:
            ValueError: If the YAML is malformed or fails validation
        """
        with open(self.config_path) as f:
            raw = yaml.safe_load(f) or {}

        if not isinstance(raw, dict):
            raise ValueError("Pipeline configuration must be a mapping")

        return self.parse(raw)

    @staticmethod
    def parse(raw: dict[str, Any]) -> PipelineConfig:
        stages = raw.get("stages") or {}
        unknown = set(stages) - set(STAGE_NAMES)
        if unknown:
            raise ValueError(f"Unknown stages in configuration: {', '.join(sorted(unknown))}")

        merged = _default_stages()
        for name, settings in stages.items():
            merged[name] = StageSettings.model_validate(settings or {})

        try:
            return PipelineConfig.model_validate({**raw, "stages": merged})
        except PydanticValidationError as e:
            raise ValueError(f"Invalid pipeline configuration: {e}") from e


def load_config(config_path: str | Path | None = None) -> PipelineConfig:
    """
    Load configuration from `config_path`, $PIPELINE_CONFIG, or the default path.

    Falls back to built-in defaults when no file exists.
    """
    path = config_path or os.getenv("PIPELINE_CONFIG", DEFAULT_CONFIG_PATH)
    if not Path(path).exists():
        logger.warning(f"Pipeline configuration file not found: {path}, using defaults")
        return PipelineConfig()
    return PipelineConfigLoader(path).load()
