"""Configuration for the logging proxy."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class ProxyConfig(BaseSettings):
    """Proxy configuration, loaded from env vars or CLI args."""

    model_config = {"env_prefix": "MIDDLEWARE_LOGGER_"}

    # Local listener
    host: str = Field(default="127.0.0.1", description="Address to bind the listener to")
    port: int = Field(default=8000, description="Local port to listen on")
    local_tls: bool = Field(default=False, description="Accept TLS connections locally")
    tls_certfile: str | None = Field(
        default=None, description="PEM certificate for the local TLS listener"
    )
    tls_keyfile: str | None = Field(
        default=None, description="PEM private key for the local TLS listener"
    )

    # Upstream
    upstream_host: str = Field(default="api.anthropic.com", description="Remote host address")
    upstream_port: int = Field(default=443, description="Remote port")
    upstream_tls: bool = Field(default=True, description="Use HTTPS for the remote connection")
    connect_timeout: float = Field(default=10.0, description="Upstream connect timeout (s)")
    read_timeout: float = Field(default=300.0, description="Upstream read timeout (s)")

    # Inspection
    log_body: bool = Field(default=False, description="Log request and response bodies")
    merge_sse: bool = Field(
        default=False, description="Merge server-sent events into readable messages"
    )
    max_body_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Cap on the per-exchange body copy kept for inspection",
    )

    # Display
    debug: bool = Field(default=False, description="Emit diagnostic traces")
    chat_mode: bool = Field(
        default=True, description="Show only the chat conversation with live streaming"
    )
    verbose: bool = Field(default=False, description="Show full prompts without truncation")
    display_max_chars: int = Field(
        default=1000, description="Maximum characters shown for a raw body"
    )

    @property
    def inspect_bodies(self) -> bool:
        """Whether body copies are accumulated at all."""
        return self.log_body or self.chat_mode

    @property
    def reassemble_streams(self) -> bool:
        """Whether event-stream responses are merged into messages."""
        return self.merge_sse or self.chat_mode

    @property
    def upstream_authority(self) -> str:
        """The ``host:port`` written into the forwarded ``Host`` header."""
        return f"{self.upstream_host}:{self.upstream_port}"

    @property
    def upstream_base_url(self) -> str:
        scheme = "https" if self.upstream_tls else "http"
        return f"{scheme}://{self.upstream_host}:{self.upstream_port}"
