"""Credential and device-flow data structures.

StoredCredentials is what the vault persists. DeviceAuthorization and
TokenResponse are the short-lived payloads exchanged with the device
authorization endpoints and are never written to disk.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Store membership role."""

    OWNER = "owner"
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class CredentialFormatError(ValueError):
    """Data does not match the StoredCredentials schema."""


@dataclass
class StoredCredentials:
    """Long-lived API key plus the store metadata it was issued for.

    Serialized with camelCase keys (apiKey, storeId, ...) so files written
    by earlier plaintext releases remain readable.

    Attributes:
        api_key: The store API key (secret)
        store_id: ID of the store the key is scoped to
        store_name: Display name of the store
        role: The user's role in the store
        scopes: Permission scopes granted to the key
        created_at: When the credentials were obtained (UTC)
    """

    api_key: str
    store_id: str
    store_name: str
    role: Role
    scopes: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON shape."""
        return {
            "apiKey": self.api_key,
            "storeId": self.store_id,
            "storeName": self.store_name,
            "role": self.role.value,
            "scopes": list(self.scopes),
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StoredCredentials":
        """Validate and deserialize the on-disk JSON shape.

        Every field must be present and correctly typed; apiKey and storeId
        must be non-empty.

        Raises:
            CredentialFormatError: If the structure is invalid
        """
        if not isinstance(data, dict):
            raise CredentialFormatError("credentials must be a JSON object")

        api_key = data.get("apiKey")
        store_id = data.get("storeId")
        store_name = data.get("storeName")
        role = data.get("role")
        scopes = data.get("scopes")
        created_at = data.get("createdAt")

        if not isinstance(api_key, str) or not api_key:
            raise CredentialFormatError("apiKey must be a non-empty string")
        if not isinstance(store_id, str) or not store_id:
            raise CredentialFormatError("storeId must be a non-empty string")
        if not isinstance(store_name, str):
            raise CredentialFormatError("storeName must be a string")
        if not isinstance(role, str):
            raise CredentialFormatError("role must be a string")
        if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
            raise CredentialFormatError("scopes must be a list of strings")
        if not isinstance(created_at, str):
            raise CredentialFormatError("createdAt must be a string")

        try:
            parsed_role = Role(role)
        except ValueError:
            raise CredentialFormatError(f"unknown role: {role}")

        try:
            parsed_created = datetime.fromisoformat(created_at)
        except ValueError:
            raise CredentialFormatError("createdAt must be an ISO 8601 timestamp")
        if parsed_created.tzinfo is None:
            parsed_created = parsed_created.replace(tzinfo=timezone.utc)

        return cls(
            api_key=api_key,
            store_id=store_id,
            store_name=store_name,
            role=parsed_role,
            scopes=scopes,
            created_at=parsed_created,
        )

    @classmethod
    def from_token_response(cls, token: "TokenResponse") -> "StoredCredentials":
        """Build credentials from a successful device-flow token response."""
        return cls(
            api_key=token.access_token,
            store_id=token.store.id,
            store_name=token.store.name,
            role=token.role,
            scopes=list(token.scopes),
        )

    def summary(self) -> dict[str, Any]:
        """Non-secret view for status and diagnostics output."""
        return {
            "storeId": self.store_id,
            "storeName": self.store_name,
            "role": self.role.value,
            "scopes": list(self.scopes),
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class DeviceAuthorization:
    """Response from the device authorization endpoint.

    Attributes:
        device_code: Code used to poll for the token (never shown to the user)
        user_code: Code the user confirms in the browser
        verification_uri: Page where the user enters the code
        verification_uri_complete: Same page with the code embedded
        expires_in: Seconds until the codes expire
        interval: Minimum polling interval in seconds
    """

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceAuthorization":
        verification_uri = data["verification_uri"]
        return cls(
            device_code=data["device_code"],
            user_code=data["user_code"],
            verification_uri=verification_uri,
            verification_uri_complete=data.get("verification_uri_complete") or verification_uri,
            expires_in=int(data.get("expires_in", 900)),
            interval=int(data.get("interval", 5)),
        )


@dataclass
class StoreInfo:
    """Store summary embedded in a token response."""

    id: str
    name: str
    domain: str | None = None
    currency: str | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "domain": self.domain,
            "currency": self.currency,
        }


@dataclass
class TokenResponse:
    """Successful response from the device token endpoint."""

    access_token: str
    token_type: str
    store: StoreInfo
    role: Role
    scopes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenResponse":
        """Parse a token endpoint response.

        Raises:
            KeyError, TypeError, ValueError: If required fields are missing
                or malformed
        """
        store = data["store"]
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            store=StoreInfo(
                id=store["id"],
                name=store["name"],
                domain=store.get("domain"),
                currency=store.get("currency"),
                status=store.get("status"),
            ),
            role=Role(data["role"]),
            scopes=list(data.get("scopes") or []),
        )
