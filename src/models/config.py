from typing import Literal, Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict

from src.models.cache import ImageCacheConfig
from src.models.session import SessionStoreConfig


class RemoteConfig(BaseModel):
    """Remote session backend settings"""

    model_config = ConfigDict(protected_namespaces=())

    enabled: bool = False
    base_url: Optional[str] = Field(
        default=None, description="REST root, e.g. https://api.example.com/v1"
    )
    api_token: Optional[str] = Field(
        default=None, description="Bearer token for the remote backend"
    )
    user_id: Optional[str] = Field(
        default=None, description="Signed-in user; None means local-only"
    )
    timeout_seconds: int = Field(30, ge=1, le=300)
    max_retries: int = Field(3, ge=1, le=10)

    @field_validator("base_url", "api_token", "user_id", mode="before")
    @classmethod
    def drop_unset_placeholders(cls, v: Optional[str]) -> Optional[str]:
        # Unsubstituted ${VAR} placeholders count as unset
        if v is None or v == "" or (isinstance(v, str) and v.startswith("${")):
            return None
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return self.enabled and self.base_url is not None


class LoggingSettings(BaseModel):
    """Structured logging settings"""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_output: bool = False

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v


class AppConfig(BaseModel):
    """Root application configuration"""

    cache: ImageCacheConfig = Field(default_factory=ImageCacheConfig)
    sessions: SessionStoreConfig = Field(default_factory=SessionStoreConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
