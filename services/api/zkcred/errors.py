"""
Error taxonomy for the presentation protocol.

Every error carries a stable ``code`` so that the HTTP layer and callers can
branch without matching on message text.
"""

from typing import Optional


class ZkCredError(Exception):
    code = "ZKCRED_ERROR"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class CredentialError(ZkCredError):
    """Malformed or unsupported credential, missing issuer key, capacity exceeded."""

    code = "CREDENTIAL_ERROR"


class PolicyError(ZkCredError):
    """Unsatisfiable or malformed policy."""

    code = "POLICY_ERROR"


class DeviceBindingError(ZkCredError):
    code = "DEVICE_BINDING_ERROR"


class ProofError(ZkCredError):
    """Proving backend failure or failed proof self-check."""

    code = "PROOF_ERROR"


class VerificationError(ZkCredError):
    code = "VERIFICATION_ERROR"


class ConfigError(ZkCredError):
    """A required collaborator is unavailable or misconfigured."""

    code = "CONFIG_ERROR"


class StorageError(ZkCredError):
    code = "STORAGE_ERROR"
