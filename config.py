"""
Configuration management for the school-management request-security pipeline.
Centralized configuration with environment variables and .env support.
"""
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class SecurityError(Exception):
    """Security configuration error."""
    pass


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Environment
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    # Application configuration
    app_name: str = Field(default="SchoolGate", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    debug: bool = Field(default=False, validation_alias="DEBUG")
    port: int = Field(default=8000, validation_alias="PORT")

    # Logging
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(default=False, validation_alias="LOG_JSON")

    # Credential verification
    jwt_secret: str = Field(..., validation_alias="JWT_SECRET")  # No default, must be provided
    jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")

    # Redis (shared counter store, audit store)
    redis_url: Optional[str] = Field(default=None, validation_alias="REDIS_URL")
    redis_timeout: float = Field(default=5.0, validation_alias="REDIS_TIMEOUT")
    redis_max_connections: int = Field(default=50, validation_alias="REDIS_MAX_CONNECTIONS")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, validation_alias="RATE_LIMIT_ENABLED")
    rate_limit_per_minute: int = Field(default=100, validation_alias="RATE_LIMIT_PER_MINUTE")
    rate_limit_window_seconds: int = Field(default=60, validation_alias="RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit_attempts: int = Field(default=5, validation_alias="AUTH_RATE_LIMIT_ATTEMPTS")
    auth_rate_limit_window_seconds: int = Field(default=900, validation_alias="AUTH_RATE_LIMIT_WINDOW_SECONDS")  # 15 minutes
    upload_rate_limit_requests: int = Field(default=10, validation_alias="UPLOAD_RATE_LIMIT_REQUESTS")
    upload_rate_limit_window_seconds: int = Field(default=60, validation_alias="UPLOAD_RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_exempt_paths: List[str] = Field(default=["/health"], validation_alias="RATE_LIMIT_EXEMPT_PATHS")
    rate_limit_fallback_retry_seconds: int = Field(default=30, validation_alias="RATE_LIMIT_FALLBACK_RETRY_SECONDS")
    rate_limit_key_prefix: str = Field(default="schoolgate:rate_limit:", validation_alias="RATE_LIMIT_KEY_PREFIX")
    # Honour X-Forwarded-For / X-Real-IP only behind a proxy that overwrites them
    trust_proxy_headers: bool = Field(default=False, validation_alias="TRUST_PROXY_HEADERS")

    # CSRF protection
    csrf_protection_enabled: bool = Field(default=True, validation_alias="CSRF_PROTECTION_ENABLED")
    csrf_cookie_name: str = Field(default="csrf-token", validation_alias="CSRF_COOKIE_NAME")
    csrf_header_name: str = Field(default="X-CSRF-Token", validation_alias="CSRF_HEADER_NAME")
    csrf_body_field: str = Field(default="csrfToken", validation_alias="CSRF_BODY_FIELD")
    csrf_token_max_age: int = Field(default=86400, validation_alias="CSRF_TOKEN_MAX_AGE")  # 24 hours

    # Audit trail
    audit_enabled: bool = Field(default=True, validation_alias="AUDIT_ENABLED")
    audit_max_entries: int = Field(default=10000, validation_alias="AUDIT_MAX_ENTRIES")
    audit_redis_key: str = Field(default="schoolgate:audit_log", validation_alias="AUDIT_REDIS_KEY")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() in ["development", "dev", "local"]

    def validate_production_security(self) -> None:
        """Refuse to start a production process with weak security settings."""
        if not self.is_production():
            return

        security_errors = []
        if len(self.jwt_secret) < 32:
            security_errors.append("JWT_SECRET must be at least 32 characters")
        if self.debug:
            security_errors.append("DEBUG must be False in production")
        if not self.csrf_protection_enabled:
            security_errors.append("CSRF_PROTECTION_ENABLED must be True in production")
        if not self.redis_url:
            security_errors.append("REDIS_URL is required in production for global rate limits")

        if security_errors:
            raise SecurityError(f"Production security validation failed: {'; '.join(security_errors)}")


def get_settings() -> Settings:
    """Settings accessor for dependency injection."""
    return settings


# Global settings instance
settings = Settings()
