"""
Importing backend, binding and secret records from a JSON document.
"""

import json
from pathlib import Path
from typing import Any, Dict, Union

from pydantic import ValidationError

from mcp_toolkit.core.exceptions import ConfigError
from mcp_toolkit.core.models import Backend, Binding
from mcp_toolkit.core.secrets import SecretManager
from mcp_toolkit.core.storage import SQLiteStorage
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)


def load_records_file(path: Union[str, Path]) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read records file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Records file {path} must contain a JSON object")
    return data


def import_records(data: Dict[str, Any], storage: SQLiteStorage, secrets: SecretManager) -> Dict[str, int]:
    """
    Validate and store records.

    ``secrets`` maps references to plaintext values; they are encrypted
    before being written. Everything is validated before anything is saved.

    Returns:
        Count of imported records per kind
    """
    try:
        backends = [Backend.model_validate(item) for item in data.get("backends", [])]
        bindings = [Binding.model_validate(item) for item in data.get("bindings", [])]
    except ValidationError as e:
        raise ConfigError(f"Invalid record: {e}", error_code="INVALID_RECORD") from e

    plain_secrets = data.get("secrets", {})
    if not isinstance(plain_secrets, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in plain_secrets.items()
    ):
        raise ConfigError("'secrets' must map references to string values", error_code="INVALID_RECORD")

    known_ids = {backend.id for backend in backends} | {backend.id for backend in storage.list_backends()}
    for binding in bindings:
        if binding.backend_id not in known_ids:
            raise ConfigError(
                f"Binding '{binding.id}' refers to unknown backend '{binding.backend_id}'",
                error_code="INVALID_RECORD",
            )

    for backend in backends:
        storage.save_backend(backend)
    for binding in bindings:
        storage.save_binding(binding)
    for ref, plaintext in plain_secrets.items():
        storage.save_secret(ref, secrets.encrypt(plaintext))

    counts = {"backends": len(backends), "bindings": len(bindings), "secrets": len(plain_secrets)}
    logger.info("Imported records", extra=counts)
    return counts
