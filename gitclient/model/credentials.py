"""
Opaque credential handles and proxy settings.

Credential storage and lookup live outside this package: callers hand these
objects to the client, and only the backends look inside them when a network
operation needs authentication.
"""

from pathlib import Path
from typing import List, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field, SecretStr, field_validator


class StandardCredentials(BaseModel):
    """Base class for credentials handed to the client."""

    id: Optional[str] = Field(None, description="Identifier in the credential store")
    description: Optional[str] = Field(None, description="Human-readable description")

    model_config = {"frozen": True}


class UsernamePasswordCredentials(StandardCredentials):
    """Username and password (or token) for HTTP(S) remotes."""

    username: str = Field(..., description="User name")
    password: SecretStr = Field(..., description="Password or access token")

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("username must be a non-empty string")
        return v


class SSHUserPrivateKey(StandardCredentials):
    """SSH user name and the path of a private key file."""

    username: str = Field("git", description="SSH user name")
    private_key: Path = Field(..., description="Path to the private key file")
    passphrase: Optional[SecretStr] = Field(None, description="Key passphrase")


class ProxyConfiguration(BaseModel):
    """HTTP proxy used for network operations."""

    host: str = Field(..., description="Proxy host name")
    port: int = Field(..., description="Proxy port")
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    no_proxy_hosts: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v

    @property
    def url(self) -> str:
        """Proxy URL including credentials, as git's http.proxy expects."""
        auth = ""
        if self.username:
            auth = quote(self.username, safe="")
            if self.password:
                auth += ":" + quote(self.password.get_secret_value(), safe="")
            auth += "@"
        host = self.host
        if "://" not in host:
            host = f"http://{host}"
        scheme, rest = host.split("://", 1)
        return f"{scheme}://{auth}{rest}:{self.port}"
