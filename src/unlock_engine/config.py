"""Runtime configuration for the district unlock engine."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)

USER_COLORS = [
    "#2196f399",
    "#4cb05099",
    "#fec10799",
    "#ff970099",
    "#ea1e6399",
    "#9c27b399",
]
FALLBACK_COLOR = "#808080"
LOCKED_COLOR = "rgba(128, 128, 128, 0.7)"


class BackendConfig(BaseModel):
    """REST backend connection."""
    base_url: str = "http://localhost:3000"
    timeout_s: float = 10.0


class PrefilterConfig(BaseModel):
    """Centroid pre-filter thresholds (planar degrees)."""
    near_certain_deg: float = 0.01  # inside without exact test
    cutoff_deg: float = 0.03        # never exact-tested beyond this
    top_k: int = 10


class StreamConfig(BaseModel):
    """Location stream handling."""
    deadband_m: float = 5.0  # ignore fixes closer than this to the last evaluated one


class SyncConfig(BaseModel):
    """Unlock request retry policy."""
    max_retries: int = 1
    retry_delay_s: float = 0.5


class ColorConfig(BaseModel):
    """Collaborative map palette."""
    palette: list[str] = list(USER_COLORS)
    fallback: str = FALLBACK_COLOR
    locked: str = LOCKED_COLOR


class EngineConfig(BaseModel):
    """Top-level configuration."""
    backend: BackendConfig = BackendConfig()
    prefilter: PrefilterConfig = PrefilterConfig()
    stream: StreamConfig = StreamConfig()
    sync: SyncConfig = SyncConfig()
    colors: ColorConfig = ColorConfig()
    log_level: str = "INFO"


def load_config(path: Path | None) -> EngineConfig:
    """Load config from a JSON file, or defaults if it does not exist."""
    if path is None or not path.exists():
        return EngineConfig()
    logger.info("Loading config from %s", path)
    return EngineConfig.model_validate_json(path.read_text())
