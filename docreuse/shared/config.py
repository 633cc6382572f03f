# Configuration loader with environment variable support
# YAML file per environment (config/{ENV}.yaml) + environment Settings

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings

from .models import ReuseBaseModel

logger = logging.getLogger(__name__)


class AppConfig(BaseModel):
    name: str = "docreuse"
    version: str = "0.1.0"
    log_level: str = "INFO"


class VectorIndexConfig(BaseModel):
    """Qdrant collections holding document centroids and chunk vectors."""

    centroid_collection: str = "document_centroids"
    chunk_collection: str = "document_chunks"
    timeout: int = 30
    use_grpc: bool = False
    scroll_page_size: int = Field(default=256, gt=0)
    owner_field: str = "owner_id"
    document_field: str = "document_id"


class Stage0Config(BaseModel):
    top_k: int = Field(default=600, gt=0)
    oversample: int = Field(default=2, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)


class Stage1Config(BaseModel):
    enabled: bool = True
    top_k: int = Field(default=250, gt=0)
    neighbors_per_chunk: int = Field(default=8, gt=0)
    max_concurrency: int = Field(default=8, gt=0)
    timeout_seconds: float = Field(default=60.0, gt=0)


class OverlapFormula(str, Enum):
    MIN = "min"
    HARMONIC = "harmonic"


class Stage2Config(BaseModel):
    """Adaptive scorer tunables, including the evidence floors and overlap formula."""

    parallel_workers: Optional[int] = Field(default=None, gt=0)
    max_parallel_workers: int = Field(default=28, gt=0)
    min_parallel_workers: int = Field(default=4, gt=0)
    candidates_per_worker: int = Field(default=8, gt=0)
    fallback_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    tie_tolerance: float = Field(default=1e-3, ge=0.0)
    recovery_enabled: bool = True
    recovery_top_k: int = Field(default=5, gt=0)
    recovery_max_length_diff: float = Field(default=0.4, ge=0.0, le=1.0)
    reusable_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    review_threshold: float = Field(default=0.65, ge=0.0, le=1.0)
    max_page_gap: int = Field(default=1, ge=0)
    min_section_chunks: int = Field(default=2, ge=1)
    min_single_chunk_tokens: int = Field(default=200, ge=0)
    min_evidence_tokens: int = Field(default=400, ge=0)
    min_evidence_fraction: float = Field(default=0.05, ge=0.0, le=1.0)
    overlap_formula: OverlapFormula = OverlapFormula.MIN
    candidate_timeout_seconds: float = Field(default=180.0, gt=0)
    max_results: int = Field(default=30, gt=0)

    @validator("review_threshold")
    def validate_review_threshold(cls, v, values):
        reusable = values.get("reusable_threshold")
        if reusable is not None and v > reusable:
            raise ValueError(
                f"review_threshold ({v}) must not exceed reusable_threshold ({reusable})"
            )
        return v


class SearchConfig(BaseModel):
    stage0: Stage0Config = Field(default_factory=Stage0Config)
    stage1: Stage1Config = Field(default_factory=Stage1Config)
    stage2: Stage2Config = Field(default_factory=Stage2Config)
    total_timeout_seconds: Optional[float] = Field(default=None, gt=0)


class ResilienceConfig(BaseModel):
    max_retries: int = Field(default=3, ge=1)
    initial_backoff_seconds: float = Field(default=0.2, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=5.0, ge=0.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)
    circuit_breaker_failure_threshold: int = Field(default=5, gt=0)
    circuit_breaker_recovery_timeout: float = Field(default=30.0, gt=0)


class ConcurrencyConfig(BaseModel):
    """Process-wide caps shared with other subsystems; <= 0 means unlimited."""

    global_limit: int = 32
    per_owner_limit: int = 0


class Config(ReuseBaseModel):
    """Main configuration model"""

    app: AppConfig = Field(default_factory=AppConfig)
    vector_index: VectorIndexConfig = Field(default_factory=VectorIndexConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)


class Settings(BaseSettings):
    """Environment-based settings"""

    # Environment
    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # Qdrant
    qdrant_url: Optional[str] = Field(default=None, alias="QDRANT_URL")
    qdrant_host: str = Field(default="localhost", alias="QDRANT_HOST")
    qdrant_port: int = Field(default=6333, alias="QDRANT_PORT")
    qdrant_grpc_port: int = Field(default=6334, alias="QDRANT_GRPC_PORT")
    qdrant_api_key: Optional[str] = Field(default=None, alias="QDRANT_API_KEY")

    # OpenTelemetry
    otel_exporter_otlp_endpoint: Optional[str] = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    otel_service_name: str = Field(default="docreuse", alias="OTEL_SERVICE_NAME")

    # Logging
    log_level: Optional[str] = Field(default=None, alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


def _default_config_path(settings: Settings) -> Path:
    return Path(__file__).parent.parent.parent / "config" / f"{settings.env}.yaml"


def load_config() -> tuple[Config, Settings]:
    """
    Load configuration from YAML file and environment variables.

    Returns:
        tuple: (Config, Settings) - YAML config and environment settings

    Raises:
        FileNotFoundError: If an explicit CONFIG_PATH does not exist
        ValueError: If configuration validation fails
    """
    settings = Settings()

    if settings.config_path:
        config_path = Path(settings.config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        config_path = _default_config_path(settings)

    if config_path.exists():
        logger.info(f"Loading configuration from: {config_path}")
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f) or {}
    else:
        logger.warning(
            f"No configuration file at {config_path}; using built-in defaults"
        )
        config_dict = {}

    config = Config(**config_dict)
    if settings.log_level:
        config.app.log_level = settings.log_level

    validate_config_at_startup(config, settings)

    return config, settings


def validate_config_at_startup(config: Config, settings: Settings) -> None:
    """
    Cross-section checks that single-field validators cannot express.

    Raises:
        ValueError: If the configuration is inconsistent
    """
    errors = []

    stage0 = config.search.stage0
    stage1 = config.search.stage1
    stage2 = config.search.stage2

    if stage1.top_k > stage0.top_k:
        logger.warning(
            f"search.stage1.top_k ({stage1.top_k}) exceeds search.stage0.top_k "
            f"({stage0.top_k}); Stage 1 will never run"
        )

    if stage2.min_parallel_workers > stage2.max_parallel_workers:
        errors.append(
            "search.stage2.min_parallel_workers must not exceed max_parallel_workers"
        )

    if config.vector_index.centroid_collection == config.vector_index.chunk_collection:
        errors.append(
            "vector_index.centroid_collection and chunk_collection must differ"
        )

    if config.resilience.max_backoff_seconds < config.resilience.initial_backoff_seconds:
        errors.append(
            "resilience.max_backoff_seconds must be >= initial_backoff_seconds"
        )

    if errors:
        raise ValueError("Invalid configuration: " + "; ".join(errors))

    logger.info(
        "Configuration validated",
        extra={"env": settings.env, "app": config.app.name},
    )


# Global config instances (loaded once at startup)
_config: Optional[Config] = None
_settings: Optional[Settings] = None


def get_config() -> Config:
    """Get the global Config instance"""
    global _config, _settings
    if _config is None:
        _config, _settings = load_config()
    return _config


def get_settings() -> Settings:
    """Get the global Settings instance"""
    global _config, _settings
    if _settings is None:
        _config, _settings = load_config()
    return _settings


def init_config() -> tuple[Config, Settings]:
    """Initialize and cache global config instances"""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings


def reload_config() -> tuple[Config, Settings]:
    """Force reload of config/settings from disk and environment."""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings
