"""
Configuration management using Pydantic Settings with safe access wrapper
"""
from pydantic_settings import BaseSettings
from typing import List, Optional, Any


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Document Search Service"
    version: str = "1.0.0"
    debug: bool = False
    environment: str = "production"

    # Request tracking
    enable_request_id: bool = True
    enable_audit_log: bool = True

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080
    workers: int = 4

    # Database settings
    database_url: str = "sqlite:///data/documents.db"
    database_pool_size: int = 20
    database_max_overflow: int = 40
    database_pool_recycle: int = 3600

    # Upload and extraction
    upload_dir: str = "data/uploads"
    max_upload_bytes: int = 5 * 1024 * 1024
    max_text_chars: int = 2 * 1024 * 1024

    # Occurrence search
    search_default_limit: int = 25
    search_max_limit: int = 500
    snippet_radius: int = 50
    search_early_stop: bool = False

    # Ranked search
    ranked_default_k: int = 10
    ranked_max_k: int = 50
    ranked_candidate_rows: int = 200
    ranked_snippet_radius: int = 90

    # Security settings
    cors_origins: List[str] = ["http://localhost:3000"]
    allowed_hosts: List[str] = ["localhost", "127.0.0.1"]
    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 100
    require_auth: bool = False
    api_key: Optional[str] = None

    # Cache settings
    redis_url: Optional[str] = "redis://localhost:6379/0"
    cache_ttl: int = 3600
    max_cache_size: int = 10000

    # Logging settings
    log_level: str = "INFO"
    log_file_max_bytes: int = 10485760
    log_file_backup_count: int = 10

    # Data retention
    audit_retention_days: int = 90
    cleanup_interval_hours: int = 24

    # Monitoring
    enable_metrics: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"   # allow unknown env vars without error

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.validate_settings()

    def validate_settings(self):
        """Validate critical settings on startup"""
        errors = []

        if self.environment not in ["development", "testing", "production"]:
            errors.append(f"Invalid environment: {self.environment}")

        if not self.database_url:
            errors.append("Database URL is required")

        if self.require_auth and not self.api_key:
            errors.append("API key is required when authentication is enabled")

        if not 1 <= self.search_default_limit <= self.search_max_limit:
            errors.append(
                f"search_default_limit must be between 1 and {self.search_max_limit}"
            )

        if not 1 <= self.ranked_default_k <= self.ranked_max_k:
            errors.append(f"ranked_default_k must be between 1 and {self.ranked_max_k}")

        if self.snippet_radius < 0 or self.ranked_snippet_radius < 0:
            errors.append("Snippet radius must not be negative")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")


class SafeSettings:
    """Safe wrapper for settings with fallback defaults"""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._defaults = {
            "cache_ttl": 3600,
            "max_cache_size": 10000,
            "log_level": "INFO",
            "environment": "production",
            "debug": False,
            "require_auth": False,
            "enable_metrics": True,
            "enable_audit_log": True,
            "audit_retention_days": 90,
            "search_default_limit": 25,
            "snippet_radius": 50,
            "ranked_default_k": 10,
            "ranked_snippet_radius": 90,
            "database_pool_size": 20,
            "redis_url": None,
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Safely get setting value with fallback"""
        try:
            value = getattr(self._settings, key, None)
            if value is None:
                value = self._defaults.get(key, default)
            return value
        except Exception:
            return self._defaults.get(key, default)

    def __getattr__(self, key: str) -> Any:
        """Proxy attribute access with safety"""
        return self.get(key)

    @property
    def raw(self) -> Settings:
        """Get raw settings object"""
        return self._settings


# Initialize settings with safety wrapper
_raw_settings = Settings()
settings = SafeSettings(_raw_settings)
