"""Pipeline configuration loaded from YAML with environment overrides."""
import logging
import os
from pathlib import Path
from typing import Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# Environment variables that override file settings
ENV_OVERRIDES = {
    "HOMEWORK_BACKEND": "backend",
    "HOMEWORK_MODEL": "model",
    "HOMEWORK_MODE": "mode",
    "HOMEWORK_MAX_CONCURRENCY": "max_concurrency",
}


class PipelineConfig(BaseModel):
    """Tunables for segmentation, extraction and persistence."""
    model_config = ConfigDict(extra="forbid")

    # Segmentation
    gap_threshold: float = Field(default=0.05, ge=0.0, le=1.0, description="Whitespace fraction that splits segments")
    min_segment_height: float = Field(default=0.03, ge=0.0, le=1.0, description="Segments shorter than this are merged")
    crop_padding: float = Field(default=0.02, ge=0.0, description="Padding around a cropped segment, fraction of page height")

    # Extraction
    mode: Literal["segmented", "agentic"] = Field(
        default="segmented",
        description="segmented: generic agent per segment; agentic: router then subject agent",
    )
    agent_scope: Literal["segment", "page"] = Field(
        default="segment",
        description="Invoke agents once per segment or once for the whole page",
    )
    max_concurrency: int = Field(default=4, ge=1, description="Parallel segment calls (1 = sequential)")
    max_retries: int = Field(default=1, ge=0, description="Retries per segment for transient backend errors")
    retry_base_delay: float = Field(default=2.0, ge=0.0, description="Seconds; doubled on each retry")

    # Backend
    backend: Literal["anthropic", "claude-cli"] = "anthropic"
    model: str = "claude-sonnet-4-5"
    max_tokens: int = Field(default=8192, ge=1)
    router_max_tokens: int = Field(default=1024, ge=1)
    temperature: float = Field(default=0.2, ge=0.0, le=1.0)
    request_timeout: float = Field(default=300.0, gt=0.0)
    ocr_only_fallback: bool = Field(default=True, description="Emit the OCR-only result when no backend is usable")

    # Persistence
    store_dir: Path = Path(".homework")


def load_config(path: Optional[Union[str, Path]] = None) -> PipelineConfig:
    """
    Build a PipelineConfig from an optional YAML file and the environment.

    Args:
        path: YAML file with PipelineConfig keys; missing file is an error

    Returns:
        Validated configuration

    Raises:
        FileNotFoundError: If ``path`` is given but does not exist
        pydantic.ValidationError: If a value is invalid or a key is unknown
    """
    data = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        logger.debug(f"Loaded config from {path}")

    for env_name, field in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data[field] = value
            logger.debug(f"Config override from {env_name}: {field}={value}")

    return PipelineConfig.model_validate(data)
