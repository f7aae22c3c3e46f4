"""Configuration schema using Pydantic.

Single data model and defaults for the front-end process, persisted to
~/.almondcloud/config.json.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings


class BackendConfig(BaseModel):
    """Control channel to the engine process."""
    address: str = "127.0.0.1:8001"  # host:port of the engine's control socket
    reconnect_delay: float = 10.0  # seconds between reconnect attempts
    handshake_timeout: float = 30.0
    call_timeout: float | None = None  # None = remote calls never time out
    max_frame_bytes: int = 16 * 1024 * 1024

    @field_validator("reconnect_delay", "handshake_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class ApiUserEntry(BaseModel):
    """Static API credential mapped to one user account."""
    cloud_id: str
    username: str
    human_name: str | None = None
    role: str = "User"  # name of an entry in DEFAULT_ROLES
    approved: bool = True
    scopes: list[str] = Field(default_factory=lambda: ["profile", "user-read", "user-read-results", "user-exec-command"])


class ApiConfig(BaseModel):
    """Browser-facing HTTP/WebSocket API."""
    host: str = "::"
    port: int = 8080
    tokens: dict[str, ApiUserEntry] = Field(default_factory=dict)  # bearer token -> user


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: bool = False  # also write ~/.almondcloud/logs/frontend.log


class AlmondConfig(BaseSettings):
    """Root configuration for almondcloud."""
    backend: BackendConfig = Field(default_factory=BackendConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server_origin: str = "http://127.0.0.1:8080"
    extra_origins: list[str] = Field(default_factory=list)  # extra origins allowed for cookie-auth API calls
    nl_server_url: str = "https://almond-nl.stanford.edu"

    @property
    def allowed_origins(self) -> list[str]:
        return [o.lower() for o in [self.server_origin, *self.extra_origins, "null"]]

    model_config = ConfigDict(
        env_prefix="ALMOND_",
        env_nested_delimiter="__",
    )
