"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator


class ManagerConfig(BaseModel):
    """A validated configuration model for the map manager."""

    # Storage & Server
    storage_root: Path
    server_url: str = ""

    # Download Settings
    max_attempts: int = 3
    retry_delay: float = 1.5
    progress_step_kb: int = 1024

    # Minimum dataset version the running software can read, per feature type
    required_versions: dict[str, str] = Field(default_factory=dict)

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("storage_root")
    @classmethod
    def validate_storage_root(cls, v: Path) -> Path:
        """Expands the user directory and rejects an empty root."""
        if not str(v).strip():
            raise ValueError("Storage root cannot be empty.")
        return v.expanduser()

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Ensures the server URL, when given, is an HTTP(S) URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError(f"Server URL must be an http(s) URL, but got: {v}")
        return v

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Ensures a reasonable number of transfer attempts."""
        if v < 1 or v > 10:
            raise ValueError("Max attempts must be between 1 and 10.")
        return v

    @field_validator("progress_step_kb")
    @classmethod
    def validate_progress_step(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Progress step must be at least 1 KB.")
        return v

    @model_validator(mode="after")
    def validate_retry_delay(self) -> "ManagerConfig":
        """Checks that the retry delay is not negative."""
        if self.retry_delay < 0:
            raise ValueError("Retry delay cannot be negative.")
        return self

    @property
    def progress_step(self) -> int:
        """Progress reporting granularity in bytes."""
        return self.progress_step_kb * 1024

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI DEFAULT section."""
        internal_fields = {"config_path", "required_versions"}
        return {key for key in cls.model_fields if key not in internal_fields}
