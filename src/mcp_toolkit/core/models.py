"""
Data models for mcp-toolkit.

Defines Pydantic models for backends, their transports, scope bindings
and the tool descriptors the gateway aggregates.
"""

import hashlib
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BackendKind(str, Enum):
    """How a backend is reached."""

    SUBPROCESS_IMAGE = "subprocess-image"
    SUBPROCESS_BINARY = "subprocess-binary"
    HTTP = "http"


class EnvVar(BaseModel):
    """Environment variable for a backend.

    When ``secret`` is set, ``value`` is a reference to ciphertext held by
    storage, never the plaintext.
    """

    key: str = Field(description="Variable name")
    value: str = Field(default="", description="Value or secret reference")
    secret: bool = Field(default=False, description="Whether value is a secret reference")

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Environment variable key cannot be empty")
        if "=" in v:
            raise ValueError(f"Environment variable key cannot contain '=': {v}")
        return v.strip()

    def __repr__(self) -> str:
        shown = "***" if self.secret else self.value
        return f"EnvVar(key={self.key!r}, value={shown!r}, secret={self.secret})"


class ImageTransport(BaseModel):
    """Container image run through ``docker run``."""

    kind: Literal["subprocess-image"] = "subprocess-image"
    image: str = Field(description="Container image reference")
    run_args: List[str] = Field(default_factory=list, description="Extra docker run arguments")

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Image cannot be empty")
        return v.strip()


class BinaryTransport(BaseModel):
    """Executable launched directly."""

    kind: Literal["subprocess-binary"] = "subprocess-binary"
    path: str = Field(description="Executable path")
    args: List[str] = Field(default_factory=list, description="Command arguments")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Binary path cannot be empty")
        return v.strip()


class HttpTransport(BaseModel):
    """Remote endpoint taking one JSON POST per call."""

    kind: Literal["http"] = "http"
    url: str = Field(description="Endpoint URL")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://: {v}")
        return v


TransportSpec = Annotated[
    Union[ImageTransport, BinaryTransport, HttpTransport],
    Field(discriminator="kind"),
]


class Backend(BaseModel):
    """A tool-provider backend ("MCP")."""

    id: str = Field(description="Backend identifier")
    name: str = Field(description="Display name, source of the tool prefix")
    transport: TransportSpec = Field(description="Transport configuration")
    env: List[EnvVar] = Field(default_factory=list, description="Base environment")
    description: Optional[str] = Field(default=None, description="Backend description")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Backend name cannot be empty")
        if len(v) > 100:
            raise ValueError("Backend name too long (max 100 characters)")
        return v.strip()

    @property
    def kind(self) -> BackendKind:
        return BackendKind(self.transport.kind)

    def __str__(self) -> str:
        return f"{self.name} ({self.kind.value})"


class Binding(BaseModel):
    """Activation of a backend within a scope."""

    id: str = Field(description="Binding identifier")
    backend_id: str = Field(description="Bound backend")
    scope: str = Field(description="Scope, e.g. a project")
    enabled: bool = Field(default=True, description="Whether the binding is active")
    overrides: List[EnvVar] = Field(default_factory=list, description="Per-scope env overrides")


class ToolDescriptor(BaseModel):
    """A tool as reported by ``tools/list``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(description="Tool name")
    description: str = Field(default="", description="Tool description")
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object"},
        alias="inputSchema",
        description="JSON schema of the arguments",
    )

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""

    def to_wire(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


def config_fingerprint(backend: Backend, binding: Binding) -> str:
    """Hash of everything that shapes a backend process.

    Built from the stored records only, so secret references contribute but
    decrypted values never do.
    """
    payload = backend.model_dump_json(exclude={"description"}) + binding.model_dump_json(
        include={"overrides"}
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
