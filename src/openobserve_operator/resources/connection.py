"""OpenObserveConfig resource: connection details for a backend organization."""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import Field

from .base import ResourceModel, ResourceSpec


class CredentialRef(ResourceModel):
    """Secret holding the credentials used to authenticate against the backend."""

    name: str
    namespace: Optional[str] = None
    username_key: str = Field(default="username", alias="usernameKey")
    password_key: str = Field(default="password", alias="passwordKey")
    token_key: str = Field(default="token", alias="tokenKey")


class ConfigSpec(ResourceSpec):
    """Endpoint, organization, and credentials for one backend instance."""

    endpoint: str
    organization: str
    credential_ref: CredentialRef = Field(..., alias="credentialRef")
    tls_verify: bool = Field(default=True, alias="tlsVerify")

    def to_payload(self, name: str) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint.rstrip("/"),
            "organization": self.organization,
            "credentialRef": self.credential_ref.name,
            "tlsVerify": self.tls_verify,
        }
