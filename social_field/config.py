"""Configuration management."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings pulled from ``SOCIAL_FIELD_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SOCIAL_FIELD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Clustering
    base_merge_distance: float = Field(
        default=42.0, gt=0, description="Merge distance in screen units at the reference zoom"
    )
    reference_zoom: float = Field(default=11.0, description="Zoom at which the base distance applies")
    k_anonymity_min: int = Field(
        default=5, ge=1, description="Minimum cluster size before density is revealed"
    )

    # Convergence
    horizon_seconds: float = Field(default=300.0, gt=0, description="Prediction horizon")
    max_meeting_distance: float = Field(
        default=50.0, gt=0, description="Largest predicted gap still counted as a meeting"
    )
    distance_decay: float = Field(default=30.0, gt=0, description="Distance decay of probability")
    time_decay: float = Field(default=120.0, gt=0, description="Time decay of probability")
    candidate_max_seconds: float = Field(
        default=180.0, gt=0, description="Cutoff for surfacing a convergence"
    )
    candidate_min_probability: float = Field(
        default=0.75, ge=0, le=1, description="Probability needed to surface a convergence"
    )
    snooze_seconds: float = Field(default=30.0, ge=0, description="Snooze cooldown per event id")
    detection_interval_seconds: float = Field(
        default=10.0, gt=0, description="Seconds between convergence detection passes"
    )
    min_notification_interval_seconds: float = Field(
        default=10.0, ge=0, description="Minimum gap between surfaced convergences"
    )

    # Phase synchronisation
    coupling_strength: float = Field(default=0.03, ge=0, description="Kuramoto coupling K")
    breathing_rate: float = Field(default=25.0, gt=0, description="Default breaths per minute")

    # Particles
    pool_size_low: int = Field(default=0, ge=0, description="Particle budget on low tier")
    pool_size_mid: int = Field(default=40, ge=0, description="Particle budget on mid tier")
    pool_size_high: int = Field(default=120, ge=0, description="Particle budget on high tier")

    # Precipitation
    energy_threshold: float = Field(default=0.75, ge=0, lt=1, description="Energy gate")
    min_zoom: float = Field(default=13.0, description="Lowest zoom showing precipitation")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Logging format (plain or json)")


settings = Settings()
