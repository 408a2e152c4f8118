from typing import List, Tuple

from pydantic import ConfigDict, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", extra="ignore")

    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    DATABASE_URL: str = "sqlite:///./cloudpanel.db"

    # CORS configuration
    CORS_ORIGINS: str = (
        "http://localhost:3000,http://127.0.0.1:3000,https://127.0.0.1:3000"
    )
    ENVIRONMENT: str = "development"  # development, production, testing
    LOG_LEVEL: str = "INFO"

    # Game VM control plane
    VM_CONTROLLER: str = "local"  # gce or local
    GCP_PROJECT_ID: str = ""
    GCP_ZONE: str = "us-central1-a"
    GCP_INSTANCE_NAME: str = "game-vm"
    GAME_VM_IP: str = ""  # Static internal address, overrides the polled one
    GAME_AGENT_PORT: int = 4000
    GAME_AGENT_API_PREFIX: str = "/api"

    # Timeouts and intervals (seconds unless suffixed with _MS)
    VM_POLL_INTERVAL_MS: int = 30000
    VM_STATUS_TIMEOUT: float = 10.0
    VM_OPERATION_TIMEOUT: float = 300.0
    AGENT_READY_TIMEOUT: float = 120.0
    AGENT_PROBE_INTERVAL: float = 3.0
    AGENT_POLL_HEALTH_TIMEOUT: float = 5.0
    AGENT_SHUTDOWN_TIMEOUT: float = 35.0
    ENSURE_RUNNING_STOPPING_GRACE: float = 15.0

    # Inactivity policy
    INACTIVITY_TIMEOUT_MINUTES: int = 30
    INACTIVITY_WARNING_MINUTES: int = 5
    PLAYER_POLL_INTERVAL_MS: int = 60000
    PLAYER_COUNT_TIMEOUT: float = 5.0

    # Request gate
    MANAGEMENT_API_PREFIX: str = "/api"
    LOCAL_ROUTE_PREFIXES: str = "/api/vm,/api/auth,/api/ws,/auth"
    PROXY_TIMEOUT: float = 60.0

    @field_validator("SECRET_KEY")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate SECRET_KEY meets security requirements"""
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")

        weak_values = ["your-secret-key", "secret", "default", "change-me"]
        for weak in weak_values:
            if v.startswith(weak):
                raise ValueError("SECRET_KEY cannot be a default or weak value")

        return v

    @field_validator("VM_CONTROLLER")
    @classmethod
    def validate_vm_controller(cls, v: str) -> str:
        """Only the Compute Engine and local variants exist"""
        value = v.strip().lower()
        if value not in ("gce", "local"):
            raise ValueError("VM_CONTROLLER must be 'gce' or 'local'")
        return value

    @field_validator("GAME_AGENT_PORT")
    @classmethod
    def validate_agent_port(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError("GAME_AGENT_PORT must be between 1 and 65535")
        return v

    @field_validator("VM_POLL_INTERVAL_MS", "PLAYER_POLL_INTERVAL_MS")
    @classmethod
    def validate_poll_interval(cls, v: int) -> int:
        """Validate poll intervals are within reasonable limits"""
        if v < 1000 or v > 3600000:
            raise ValueError("Poll intervals must be between 1000 and 3600000 ms")
        return v

    @field_validator(
        "VM_STATUS_TIMEOUT",
        "AGENT_PROBE_INTERVAL",
        "AGENT_POLL_HEALTH_TIMEOUT",
        "AGENT_SHUTDOWN_TIMEOUT",
        "PLAYER_COUNT_TIMEOUT",
        "PROXY_TIMEOUT",
    )
    @classmethod
    def validate_short_timeout(cls, v: float) -> float:
        """Every remote call must be bounded"""
        if v <= 0 or v > 600:
            raise ValueError("Timeouts must be greater than 0 and at most 600 seconds")
        return v

    @field_validator("VM_OPERATION_TIMEOUT", "AGENT_READY_TIMEOUT")
    @classmethod
    def validate_long_timeout(cls, v: float) -> float:
        if v <= 0 or v > 3600:
            raise ValueError(
                "Operation timeouts must be greater than 0 and at most 3600 seconds"
            )
        return v

    @field_validator("ENSURE_RUNNING_STOPPING_GRACE")
    @classmethod
    def validate_stopping_grace(cls, v: float) -> float:
        if v < 0 or v > 600:
            raise ValueError("ENSURE_RUNNING_STOPPING_GRACE must be between 0 and 600")
        return v

    @field_validator("INACTIVITY_TIMEOUT_MINUTES")
    @classmethod
    def validate_inactivity_timeout(cls, v: int) -> int:
        if v < 1 or v > 1440:
            raise ValueError("INACTIVITY_TIMEOUT_MINUTES must be between 1 and 1440")
        return v

    @field_validator("INACTIVITY_WARNING_MINUTES")
    @classmethod
    def validate_inactivity_warning(cls, v: int) -> int:
        if v < 0 or v > 1440:
            raise ValueError("INACTIVITY_WARNING_MINUTES must be between 0 and 1440")
        return v

    @field_validator("MANAGEMENT_API_PREFIX", "GAME_AGENT_API_PREFIX")
    @classmethod
    def validate_path_prefix(cls, v: str) -> str:
        """Normalize to a leading slash and no trailing slash"""
        value = v.strip()
        if not value:
            return ""
        if not value.startswith("/"):
            value = "/" + value
        return value.rstrip("/")

    @model_validator(mode="after")
    def validate_cors_for_production(self):
        """Validate CORS origins for production environment"""
        if self.ENVIRONMENT.lower() == "production":
            if "localhost" in self.CORS_ORIGINS or "127.0.0.1" in self.CORS_ORIGINS:
                raise ValueError(
                    "CORS_ORIGINS should not include localhost in production"
                )
        return self

    @model_validator(mode="after")
    def validate_gce_instance(self):
        """The Compute Engine variant needs the full instance identifier"""
        if self.VM_CONTROLLER == "gce" and not self.gce_instance_configured:
            raise ValueError(
                "GCP_PROJECT_ID, GCP_ZONE and GCP_INSTANCE_NAME are required "
                "when VM_CONTROLLER is 'gce'"
            )
        if self.INACTIVITY_WARNING_MINUTES >= self.INACTIVITY_TIMEOUT_MINUTES:
            raise ValueError(
                "INACTIVITY_WARNING_MINUTES must be less than INACTIVITY_TIMEOUT_MINUTES"
            )
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        if not self.CORS_ORIGINS:
            return []
        return [
            origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()
        ]

    @property
    def local_route_prefixes(self) -> Tuple[str, ...]:
        """Parse local route prefixes from comma-separated string"""
        return tuple(
            prefix.strip().rstrip("/")
            for prefix in self.LOCAL_ROUTE_PREFIXES.split(",")
            if prefix.strip()
        )

    @property
    def gce_instance_configured(self) -> bool:
        return bool(self.GCP_PROJECT_ID and self.GCP_ZONE and self.GCP_INSTANCE_NAME)

    @property
    def is_development(self) -> bool:
        """Check if running in development environment"""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def vm_poll_interval_seconds(self) -> float:
        return self.VM_POLL_INTERVAL_MS / 1000

    @property
    def player_poll_interval_seconds(self) -> float:
        return self.PLAYER_POLL_INTERVAL_MS / 1000


settings = Settings()
