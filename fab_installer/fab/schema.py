"""Pydantic models for the fab.yaml documents.

A fab.yaml file is a multi-document YAML stream holding exactly one
``Fabricator`` document (cluster-wide settings and component versions),
one or more ``ControlNode`` documents and any number of ``FabNode``
documents. Field names are camelCase on disk and snake_case in Python.
"""

import ipaddress
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from fab_installer.types import RegistryMode

API_VERSION = "fabricator.githedgehog.com/v1beta1"

# Accepted in place of an address for the external interface
DHCP = "dhcp"


def _validate_cidr(v: str | None) -> str | None:
    if v is None:
        return v
    try:
        ipaddress.ip_interface(v)
    except ValueError:
        raise ValueError(f"must be an address with prefix length, got '{v}'") from None
    if "/" not in v:
        raise ValueError(f"must be an address with prefix length, got '{v}'")
    return v


class FabModel(BaseModel):
    """Base for all fab.yaml models (camelCase aliases, no extra keys)."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ObjectMeta(FabModel):
    """Object metadata."""

    name: str = Field(min_length=1, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class DefaultUser(FabModel):
    """Default OS user created on every node.

    Attributes:
        password_hash: crypt(3) password hash for the ``core`` user.
        authorized_keys: SSH public keys for the ``core`` user.
    """

    password_hash: str = Field(description="crypt(3) password hash")
    authorized_keys: list[str] = Field(default_factory=list)


class ControlConfig(FabModel):
    """Control plane settings shared by all control nodes.

    Attributes:
        vip: Control plane virtual IP (address/prefix) on the management network.
        default_user: User provisioned on every node.
        join_token: k3s join token; required to build node installers.
    """

    vip: str
    default_user: DefaultUser
    join_token: str | None = None

    @field_validator("vip")
    @classmethod
    def validate_vip(cls, v: str) -> str:
        """Validate VIP is an address with prefix length."""
        _validate_cidr(v)
        return v


class RegistryConfig(FabModel):
    """Registry settings for the installed fabric."""

    mode: RegistryMode = RegistryMode.AIRGAP


class GatewayConfig(FabModel):
    """Optional gateway subsystem."""

    enable: bool = False


class FabConfig(FabModel):
    """Cluster-wide configuration."""

    control: ControlConfig
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)


class Versions(FabModel):
    """Versions of every component an installer pulls in."""

    fabricator: str = "v0.36.1"
    fabric: str = "v0.80.0"
    gateway: str = "v0.10.0"
    control_usb_root: str = "v4152.2.3-hh1"
    flatcar: str = "v4152.2.3"
    k3s: str = "v1.32.4-k3s1"
    k9s: str = "v0.50.6"
    zot: str = "v2.1.2"
    cert_manager: str = "v1.17.2"
    toolbox: str = "v0.9.0"
    reloader: str = "v1.4.11"
    reloader_chart: str = "2.2.5"


class FabricatorSpec(FabModel):
    """Spec of the Fabricator document."""

    config: FabConfig
    versions: Versions = Field(default_factory=Versions)


class Fabricator(FabModel):
    """The cluster-wide Fabricator document."""

    api_version: str = API_VERSION
    kind: Literal["Fabricator"] = "Fabricator"
    metadata: ObjectMeta
    spec: FabricatorSpec

    @property
    def is_airgap(self) -> bool:
        """Whether installed nodes must not reach the upstream registry."""
        return self.spec.config.registry.mode == RegistryMode.AIRGAP


class Bootstrap(FabModel):
    """Install target settings."""

    disk: str | None = Field(default=None, description="Target disk, e.g. /dev/sda")


class ManagementConfig(FabModel):
    """Management network interface."""

    interface: str | None = None
    ip: str | None = None

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str | None) -> str | None:
        """Validate management IP is an address with prefix length."""
        return _validate_cidr(v)


class ExternalConfig(FabModel):
    """External (uplink) network interface of a control node.

    Attributes:
        interface: Interface name.
        ip: Address with prefix length, or ``dhcp``.
        gateway: Default gateway for a static address.
        dns: DNS servers for a static address.
    """

    interface: str | None = None
    ip: str | None = None
    gateway: str | None = None
    dns: list[str] = Field(default_factory=list)

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str | None) -> str | None:
        """Validate external IP is 'dhcp' or an address with prefix length."""
        if v == DHCP:
            return v
        return _validate_cidr(v)

    @field_validator("gateway")
    @classmethod
    def validate_gateway(cls, v: str | None) -> str | None:
        """Validate gateway is a plain address."""
        if v is None:
            return v
        try:
            ipaddress.ip_address(v)
        except ValueError:
            raise ValueError(f"gateway must be an IP address, got '{v}'") from None
        return v


class DummyConfig(FabModel):
    """Dummy interface carrying the node's default route."""

    ip: str | None = None

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str | None) -> str | None:
        """Validate dummy IP is an address with prefix length."""
        return _validate_cidr(v)


class ControlNodeSpec(FabModel):
    """Spec of a ControlNode document."""

    bootstrap: Bootstrap = Field(default_factory=Bootstrap)
    management: ManagementConfig = Field(default_factory=ManagementConfig)
    external: ExternalConfig = Field(default_factory=ExternalConfig)
    dummy: DummyConfig = Field(default_factory=DummyConfig)


class ControlNode(FabModel):
    """A control node."""

    api_version: str = API_VERSION
    kind: Literal["ControlNode"] = "ControlNode"
    metadata: ObjectMeta
    spec: ControlNodeSpec = Field(default_factory=ControlNodeSpec)

    @property
    def name(self) -> str:
        return self.metadata.name


class FabNodeSpec(FabModel):
    """Spec of a FabNode document."""

    roles: list[Literal["gateway"]] = Field(default_factory=list)
    bootstrap: Bootstrap = Field(default_factory=Bootstrap)
    management: ManagementConfig = Field(default_factory=ManagementConfig)
    dummy: DummyConfig = Field(default_factory=DummyConfig)


class FabNode(FabModel):
    """A worker node joining the control plane."""

    api_version: str = API_VERSION
    kind: Literal["FabNode"] = "FabNode"
    metadata: ObjectMeta
    spec: FabNodeSpec = Field(default_factory=FabNodeSpec)

    @property
    def name(self) -> str:
        return self.metadata.name


__all__ = [
    "API_VERSION",
    "DHCP",
    "Bootstrap",
    "ControlConfig",
    "ControlNode",
    "ControlNodeSpec",
    "DefaultUser",
    "DummyConfig",
    "ExternalConfig",
    "FabConfig",
    "FabModel",
    "FabNode",
    "FabNodeSpec",
    "Fabricator",
    "FabricatorSpec",
    "GatewayConfig",
    "ManagementConfig",
    "ObjectMeta",
    "RegistryConfig",
    "Versions",
]
