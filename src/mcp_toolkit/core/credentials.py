"""
Per-call credential resolution.

Merges a backend's base environment with a binding's overrides and decrypts
secret-flagged entries. The result is built fresh for every call and is
never written back to a record or cached.
"""

from typing import List, Sequence

from mcp_toolkit.core.exceptions import SecurityError
from mcp_toolkit.core.models import Backend, Binding, EnvVar
from mcp_toolkit.core.secrets import SecretManager
from mcp_toolkit.core.storage import Storage
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)


def merge_env_vars(base: Sequence[EnvVar], overrides: Sequence[EnvVar]) -> List[EnvVar]:
    """
    Overlay ``overrides`` on ``base``.

    Base order is preserved. An override replaces the first base entry with
    the same key (value and secret flag together); otherwise it is appended.
    """
    merged = [var.model_copy() for var in base]
    for override in overrides:
        for index, existing in enumerate(merged):
            if existing.key == override.key:
                merged[index] = override.model_copy()
                break
        else:
            merged.append(override.model_copy())
    return merged


class CredentialResolver:
    """Resolves the environment a backend is started or called with."""

    def __init__(self, storage: Storage, secrets: SecretManager):
        self.storage = storage
        self.secrets = secrets

    def resolve(self, backend: Backend, binding: Binding) -> List[EnvVar]:
        """
        Build the call-scoped environment for ``backend`` under ``binding``.

        Raises:
            SecurityError: If a secret reference is missing or fails to
                decrypt. Ciphertext is never passed on in its place.
        """
        merged = merge_env_vars(backend.env, binding.overrides)
        resolved: List[EnvVar] = []

        for var in merged:
            if not var.secret:
                resolved.append(var)
                continue

            token = self.storage.get_secret_ciphertext(var.value)
            if token is None:
                raise SecurityError(
                    f"Secret '{var.value}' for {backend.name}.{var.key} not found",
                    error_code="SECRET_NOT_FOUND",
                    details={"backend": backend.name, "key": var.key},
                )

            try:
                plaintext = self.secrets.decrypt(token)
            except SecurityError as e:
                raise SecurityError(
                    f"Failed to decrypt {backend.name}.{var.key}: {e.message}",
                    error_code="DECRYPT_FAILED",
                    details={"backend": backend.name, "key": var.key},
                ) from e

            resolved.append(EnvVar(key=var.key, value=plaintext, secret=True))

        logger.debug(
            f"Resolved {len(resolved)} env vars for {backend.name}",
            extra={"backend": backend.name, "env_keys": [var.key for var in resolved]},
        )
        return resolved
