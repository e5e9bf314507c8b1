"""Browser-delegated authentication for BareMCP.

Main Components:
    DeviceAuthFlow: OAuth device authorization grant
    CredentialVault: Encrypted credential storage
    StoredCredentials: Persisted API key and store metadata

Quick Start:
    from baremcp.auth import CredentialVault, DeviceAuthFlow, StoredCredentials

    token = await DeviceAuthFlow(api_url).run()
    vault = CredentialVault(settings.credentials_file)
    vault.save(StoredCredentials.from_token_response(token))
"""

from .credentials import (
    CredentialFormatError,
    DeviceAuthorization,
    Role,
    StoredCredentials,
    StoreInfo,
    TokenResponse,
)
from .device_flow import (
    DeviceAuthFlow,
    DeviceFlowDeniedError,
    DeviceFlowError,
    DeviceFlowExpiredError,
    DeviceFlowTimeoutError,
    DeviceFlowTransportError,
    FlowState,
    PollStep,
    transition,
)
from .vault import (
    CredentialVault,
    CredentialVaultError,
    EncryptedBlob,
    VaultLoad,
    decrypt,
    derive_key,
    encrypt,
)

__all__ = [
    # Flow
    "DeviceAuthFlow",
    "FlowState",
    "PollStep",
    "transition",
    "DeviceFlowError",
    "DeviceFlowDeniedError",
    "DeviceFlowExpiredError",
    "DeviceFlowTimeoutError",
    "DeviceFlowTransportError",
    # Credentials
    "StoredCredentials",
    "CredentialFormatError",
    "Role",
    "DeviceAuthorization",
    "TokenResponse",
    "StoreInfo",
    # Storage
    "CredentialVault",
    "CredentialVaultError",
    "EncryptedBlob",
    "VaultLoad",
    "derive_key",
    "encrypt",
    "decrypt",
]
