"""Configuration for the Portcullis gateway.

Values come from ``PORTCULLIS_*`` environment variables or a ``.env`` file.
Configuration is read once at startup and is immutable afterwards.
"""

from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from portcullis.auth.models.security import RedirectPolicy


class Settings(BaseSettings):
    """Gateway settings with env and file support."""

    model_config = SettingsConfigDict(
        env_prefix="PORTCULLIS_", env_file=".env", extra="ignore", frozen=True
    )

    # Upstream OAuth server
    authorization_endpoint: str = Field(
        default="https://auth.example.com/authorize",
        description="Upstream authorization endpoint users are redirected to",
    )
    token_endpoint: str = Field(
        default="https://auth.example.com/token",
        description="Upstream token endpoint for code exchange and refresh",
    )
    userinfo_endpoint: str | None = Field(
        default=None,
        description="Upstream userinfo endpoint, used when the token response has no subject",
    )
    client_id: str = Field(default="portcullis", description="Client id registered upstream")
    client_secret: str | None = Field(default=None, description="Client secret, if confidential")
    scope: str | None = Field(default=None, description="Scope requested from the upstream server")
    callback_url: str = Field(
        default="http://localhost:8000/callback",
        description="Public URL of this gateway's callback endpoint",
    )

    # Redirect policy
    allowed_redirect_hosts: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="HTTPS redirect hosts to allow (comma separated); empty allows any",
    )
    allow_loopback_http: bool = Field(
        default=True, description="Allow http://localhost and http://127.0.0.1 redirects"
    )

    # Lifetimes
    session_ttl: float = Field(default=3600.0, gt=0, description="Session token lifetime (s)")
    flow_ttl: float = Field(default=600.0, gt=0, description="Pending authorization lifetime (s)")
    max_pending_flows: int = Field(default=10_000, ge=1, description="Pending flow cap")
    sweep_interval: float = Field(default=60.0, gt=0, description="Expiry sweep period (s)")
    max_body_size: int = Field(
        default=1024 * 1024, ge=1, description="Largest request body inspected for tokens (bytes)"
    )

    # Security
    pkce_enabled: bool = Field(default=True, description="Send PKCE challenges upstream")

    # Upstream I/O
    upstream_timeout: float = Field(default=10.0, gt=0, description="Upstream HTTP timeout (s)")
    retry_backoff: float = Field(default=0.5, ge=0, description="Delay before the single retry (s)")

    # Server
    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    log_level: str = Field(default="INFO", description="Root log level")

    @field_validator("allowed_redirect_hosts", mode="before")
    @classmethod
    def _split_hosts(cls, value: object) -> object:
        if isinstance(value, str):
            return [host.strip() for host in value.split(",") if host.strip()]
        return value

    def redirect_policy(self) -> RedirectPolicy:
        return RedirectPolicy(
            allowed_hosts=frozenset(self.allowed_redirect_hosts),
            allow_loopback_http=self.allow_loopback_http,
        )
