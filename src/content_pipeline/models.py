"""Pydantic models for configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class DatabaseConfig(BaseModel):
    """Job store location."""

    path: str = Field(default="content_pipeline.db", description="SQLite database file")


class JobsConfig(BaseModel):
    """Attempt budget, backoff policy and executor timeouts."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts per job before it fails")
    backoff_base_s: float = Field(
        default=1.0, ge=0.0, description="Base delay of the exponential retry backoff"
    )
    backoff_max_s: float = Field(default=60.0, ge=0.0, description="Cap on the retry delay")
    handler_timeout_s: float = Field(
        default=600.0, gt=0.0, description="Bounded wait around each handler call"
    )
    stage_wait_timeout_s: float = Field(
        default=3600.0,
        gt=0.0,
        description="How long a pipeline run waits on a stage another claimer holds",
    )
    stage_poll_interval_s: float = Field(
        default=0.5, gt=0.0, description="Status poll interval while waiting on a stage"
    )
    heartbeat_interval_s: float = Field(
        default=60.0, gt=0.0, description="How often a running handler refreshes its claim"
    )
    stale_after_s: float = Field(
        default=600.0,
        gt=0.0,
        description="Silence after which a processing job is reset to pending",
    )

    @field_validator("backoff_max_s")
    @classmethod
    def max_not_below_base(cls, v: float, info) -> float:
        if "backoff_base_s" in info.data and v < info.data["backoff_base_s"]:
            raise ValueError(
                f"backoff_max_s ({v}) must be >= backoff_base_s ({info.data['backoff_base_s']})"
            )
        return v

    @field_validator("stale_after_s")
    @classmethod
    def stale_above_heartbeat(cls, v: float, info) -> float:
        if "heartbeat_interval_s" in info.data and v <= info.data["heartbeat_interval_s"]:
            raise ValueError(
                f"stale_after_s ({v}) must be > heartbeat_interval_s "
                f"({info.data['heartbeat_interval_s']})"
            )
        return v


class PollerConfig(BaseModel):
    """Background sweep for independently enqueued and unblocked jobs."""

    enabled: bool = Field(default=True, description="Run the poller inside `serve`")
    batch_size: int = Field(default=10, gt=0, description="Due jobs claimed per tick")
    poll_interval_s: float = Field(default=2.0, gt=0.0, description="Idle poll interval")
    max_poll_interval_s: float = Field(
        default=10.0, gt=0.0, description="Upper bound of the idle backoff"
    )


class StreamingConfig(BaseModel):
    heartbeat_interval_s: float = Field(
        default=15.0, gt=0.0, description="Idle seconds before an SSE heartbeat comment"
    )


class EmbeddingsConfig(BaseModel):
    """Chunking applied before embedding."""

    chunk_size: int = Field(default=1000, gt=0, description="Characters per chunk")
    chunk_overlap: int = Field(default=100, ge=0, description="Characters shared by neighbours")

    @field_validator("chunk_overlap")
    @classmethod
    def overlap_below_size(cls, v: int, info) -> int:
        if "chunk_size" in info.data and v >= info.data["chunk_size"]:
            raise ValueError(f"chunk_overlap ({v}) must be < chunk_size ({info.data['chunk_size']})")
        return v


class ProvidersConfig(BaseModel):
    factory: Optional[str] = Field(
        default=None,
        description="Import string 'module:callable' returning a Providers instance",
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db_path") is not None:
            config_dict["database"]["path"] = cli_args["db_path"]
        if cli_args.get("max_attempts") is not None:
            config_dict["jobs"]["max_attempts"] = cli_args["max_attempts"]
        if cli_args.get("no_poller"):
            config_dict["poller"]["enabled"] = False
        if cli_args.get("batch_size") is not None:
            config_dict["poller"]["batch_size"] = cli_args["batch_size"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if cli_args.get("providers_factory") is not None:
            config_dict["providers"]["factory"] = cli_args["providers_factory"]

        return PipelineConfig.from_dict(config_dict)
