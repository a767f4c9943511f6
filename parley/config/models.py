from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ProviderConfig(BaseModel):
    enabled: bool = True
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    endpoint: Optional[str] = None
    endpoint_env: Optional[str] = None
    default_model: str
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    connect_timeout: float = 30.0
    read_timeout: float = 60.0
    write_timeout: float = 30.0
    max_attempts: int = Field(default=1, ge=1)
    backoff_seconds: float = 2.0
    usage_fallback: bool = True
    stream_usage: bool = True


class DefaultsConfig(BaseModel):
    provider: str = "openai"
    model: str = "gpt-4o-mini"


class StorageConfig(BaseModel):
    path: str
    cache_size: int = Field(default=5, ge=1)
    max_history: int = Field(default=50, ge=0)
    snapshot_interval: float = 0.5


class StreamingConfig(BaseModel):
    throttle_ms: int = Field(default=50, ge=0)


class LoggingConfig(BaseModel):
    level: str = "WARNING"
    file: Optional[str] = None


class ParleyConfig(BaseModel):
    version: str = "1.0"
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    storage: StorageConfig
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    pricing: Dict[str, float] = Field(default_factory=dict)

    def get_dot_notation(self, key: str, default: Any = None) -> Any:
        """Get value using dot notation from the config model"""
        current: Any = self
        for part in key.split("."):
            if isinstance(current, dict):
                if part not in current:
                    return default
                current = current[part]
            elif hasattr(current, part):
                current = getattr(current, part)
            else:
                return default
        return current
