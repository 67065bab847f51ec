"""Configuration management for the ResQ dispatch service."""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ResQConfig:
    """Configuration for the dispatch core and its HTTP surface."""

    # Backend configuration
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""
    supabase_access_token: str | None = None

    # Storage configuration
    image_bucket: str = "incident-images"

    # Dispatch configuration
    nearby_radius_km: float = 50.0

    # Request configuration
    request_timeout_seconds: float = 30.0
    max_retries: int = 3

    # Store configuration
    clear_on_load_failure: bool = False

    # Shared secret expected on database change webhooks
    webhook_secret: str | None = None

    # Server configuration
    server_port: int = 8000
    server_host: str = "0.0.0.0"

    # Logging configuration
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ResQConfig":
        """Create configuration from environment variables."""
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", "http://localhost:54321"),
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY", ""),
            supabase_access_token=os.getenv("SUPABASE_ACCESS_TOKEN") or None,
            image_bucket=os.getenv("RESQ_IMAGE_BUCKET", "incident-images"),
            nearby_radius_km=float(os.getenv("RESQ_NEARBY_RADIUS_KM", "50")),
            request_timeout_seconds=float(
                os.getenv("RESQ_REQUEST_TIMEOUT_SECONDS", "30")
            ),
            max_retries=int(os.getenv("RESQ_MAX_RETRIES", "3")),
            clear_on_load_failure=_env_bool("RESQ_CLEAR_ON_LOAD_FAILURE"),
            webhook_secret=os.getenv("RESQ_WEBHOOK_SECRET") or None,
            server_port=int(os.getenv("SERVER_PORT", "8000")),
            server_host=os.getenv("SERVER_HOST", "0.0.0.0"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def validate(self) -> None:
        """Validate configuration settings."""
        if not self.supabase_url:
            raise ValueError("Supabase URL is required")

        if not self.supabase_url.startswith(("http://", "https://")):
            raise ValueError("Supabase URL must start with http:// or https://")

        if self.nearby_radius_km <= 0:
            raise ValueError("Nearby search radius must be positive")

        if self.request_timeout_seconds <= 0:
            raise ValueError("Request timeout must be positive")

        if self.max_retries < 0:
            raise ValueError("Max retries cannot be negative")

        if self.server_port <= 0 or self.server_port > 65535:
            raise ValueError("Server port must be between 1 and 65535")


# Global configuration instance
config = ResQConfig.from_env()
