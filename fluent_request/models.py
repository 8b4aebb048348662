"""Configuration models for fluent-request.

All models use Pydantic v2. See DESIGN.md "Client Configuration".
"""

from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ClientConfig(BaseModel):
    """Settings for the httpx client built by configure_clients().

    TLS fields mirror what httpx needs to build an SSL context: a CA bundle
    for server verification, a client certificate/key pair for mTLS, and an
    optional OpenSSL cipher string.
    """

    model_config = ConfigDict(extra="forbid")

    base_url: str | None = Field(
        default=None, description="Base URL used when a Request has none"
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Default headers for every request (supports ${ENV_VAR} substitution)",
    )
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")
    follow_redirects: bool = Field(default=True, description="Follow 3xx redirects")
    verify_ssl: bool = Field(default=True, description="Verify server certificates")
    ca_bundle: str | None = Field(default=None, description="Path to CA bundle file")
    cert: str | None = Field(default=None, description="Client certificate file (mTLS)")
    key: str | None = Field(default=None, description="Client private key file (mTLS)")
    key_password: str | None = Field(default=None, description="Password for the private key")
    ciphers: str | None = Field(default=None, description="OpenSSL cipher string")

    @model_validator(mode="after")
    def check_client_certificate(self) -> Self:
        if (self.cert is None) != (self.key is None):
            raise ValueError("cert and key must be specified together")
        if self.key_password is not None and self.key is None:
            raise ValueError("key_password requires key")
        return self
