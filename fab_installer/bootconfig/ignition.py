"""Ignition first-boot configuration for control and worker nodes.

The generated config (Ignition spec 3.3.0, consumed by Flatcar) provisions
the ``core`` user, disables automatic updates, names the host, configures
systemd-networkd for the management, external and dummy interfaces and,
for image builds, enables a one-shot unit running the staged installer.
"""

from __future__ import annotations

import base64
import ipaddress
import json
from collections.abc import Callable
from typing import Any

from fab_installer.builds.assembler import INSTALLER_NAME
from fab_installer.errors import ConfigurationError, MissingFieldError
from fab_installer.fab.schema import DHCP, ControlNode, Fabricator, FabNode

IGNITION_VERSION = "3.3.0"

TOOLBOX_IMAGE = "ghcr.io/githedgehog/toolbox"

BootConfigFactory = Callable[[str], bytes]


class BootConfigError(ConfigurationError):
    """Raised when a boot config cannot be generated from the node settings."""

    def __init__(self, message: str, code: str = "invalid_boot_config") -> None:
        super().__init__(message, code=code)


def data_url(text: str) -> str:
    """Encode text as an Ignition data URL."""
    return "data:;base64," + base64.b64encode(text.encode("utf-8")).decode("ascii")


def file_entry(
    path: str, contents: str, mode: int = 0o644, overwrite: bool = False
) -> dict[str, Any]:
    """Ignition storage file entry with inline contents."""
    entry: dict[str, Any] = {
        "path": path,
        "mode": mode,
        "contents": {"source": data_url(contents)},
    }
    if overwrite:
        entry["overwrite"] = True
    return entry


def ini(*sections: tuple[str, list[str]]) -> str:
    """Render systemd-style INI sections."""
    blocks = []
    for name, lines in sections:
        blocks.append("\n".join([f"[{name}]", *lines]))
    return "\n\n".join(blocks) + "\n"


def _require(value: str | None, field: str, owner: str) -> str:
    if not value:
        raise MissingFieldError(field, owner)
    return value


def dummy_route(dummy_ip: str | None, owner: str) -> tuple[str, str]:
    """Address and default gateway of the dummy interface.

    Args:
        dummy_ip: Dummy IP with prefix length; must be a /31.
        owner: Node identifier for error messages.

    Returns:
        Tuple of (network address with prefix, gateway address): the
        first and second address of the /31.

    Raises:
        MissingFieldError: If unset.
        BootConfigError: If not a /31.
    """
    iface = ipaddress.ip_interface(_require(dummy_ip, "dummy.ip", owner))
    if iface.network.prefixlen != 31:
        raise BootConfigError(f"{owner}: dummy IP must be a /31, got {dummy_ip}")
    network = iface.network
    return str(network), str(network.network_address + 1)


def install_unit(auto_install: str) -> dict[str, Any]:
    """Systemd unit running the staged installer once on first boot."""
    contents = ini(
        (
            "Unit",
            [
                'Description="Firstboot installation program for Hedgehog Fabricator"',
                "ConditionPathExists=!/opt/hedgehog/.install",
                "StartLimitIntervalSec=30",
                "StartLimitBurst=3",
            ],
        ),
        (
            "Service",
            [
                "Type=simple",
                f"ExecStartPre=chmod +x {auto_install}/{INSTALLER_NAME}",
                f"ExecStart={auto_install}/{INSTALLER_NAME} install -v",
                f"WorkingDirectory={auto_install}",
                'Environment="PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin'
                ':/sbin:/bin:/opt/bin" "HOME=/home/core"',
                "Restart=on-failure",
            ],
        ),
        ("Install", ["WantedBy=first-boot-complete.target"]),
    )
    return {"name": "fab-install.service", "enabled": True, "contents": contents}


def _mgmt_network(interface: str, addresses: list[str]) -> str:
    return ini(
        ("Match", [f"Name={interface}", "Type=ether"]),
        (
            "Network",
            [
                *(f"Address={a}" for a in addresses),
                "DHCP=no",
                "IPv6AcceptRA=no",
                "IPv6SendRA=no",
                "LLDP=yes",
                "EmitLLDP=yes",
                "ConfigureWithoutCarrier=yes",
            ],
        ),
    )


def _ext_network(interface: str, address: str, gateway: str | None, dns: list[str]) -> str:
    match = ("Match", [f"Name={interface}", "Type=ether"])
    if address == DHCP:
        return ini(
            match,
            (
                "Network",
                [
                    "DHCP=ipv4",
                    "KeepConfiguration=dhcp-on-stop",
                    "IPv6AcceptRA=no",
                    "IPv6SendRA=no",
                    "LLDP=no",
                    "EmitLLDP=no",
                ],
            ),
            ("DHCP", ["UseMTU=true", "UseDomains=true"]),
            ("DHCPv4", ["RoutesToDNS=false", "UseHostname=false"]),
        )

    lines = [f"Address={address}"]
    if gateway:
        lines.append(f"Gateway={gateway}")
    lines.extend(f"DNS={server}" for server in dns)
    lines.extend(["DHCP=no", "IPv6AcceptRA=no", "IPv6SendRA=no", "LLDP=no", "EmitLLDP=no"])
    return ini(match, ("Network", lines))


def _base_config(
    fab: Fabricator,
    hostname: str,
    motd: str,
    dummy: tuple[str, str],
    auto_install: str,
) -> dict[str, Any]:
    user = fab.spec.config.control.default_user
    core: dict[str, Any] = {
        "name": "core",
        "passwordHash": user.password_hash,
        "groups": ["wheel"],
        "shell": "/bin/bash",
    }
    if user.authorized_keys:
        core["sshAuthorizedKeys"] = list(user.authorized_keys)

    units: list[dict[str, Any]] = [{"name": "locksmithd.service", "mask": True}]
    if auto_install:
        units.append(install_unit(auto_install))

    dummy_address, dummy_gateway = dummy
    files = [
        file_entry(
            "/etc/flatcar/update.conf",
            "SERVER=disabled\nREBOOT_STRATEGY=off\n",
            overwrite=True,
        ),
        file_entry("/etc/hostname", hostname, overwrite=True),
        {
            "path": "/etc/hosts",
            "append": [{"source": data_url(f"127.0.0.1 {hostname}\n")}],
        },
        file_entry("/etc/motd.d/hedgehog.conf", motd + "\n"),
        file_entry(
            "/etc/systemd/network/10-dummy.netdev",
            ini(("NetDev", ["Name=dummy0", "Kind=dummy"])),
        ),
        file_entry(
            "/etc/systemd/network/11-dummy.network",
            ini(
                ("Match", ["Name=dummy0"]),
                ("Network", [f"Address={dummy_address}"]),
                (
                    "Route",
                    [f"Gateway={dummy_gateway}", "Destination=0.0.0.0/0", "Metric=42000"],
                ),
            ),
        ),
    ]

    return {
        "ignition": {"version": IGNITION_VERSION},
        "passwd": {"users": [core]},
        "systemd": {"units": units},
        "storage": {"files": files},
    }


def _tail_files() -> list[dict[str, Any]]:
    return [
        file_entry(
            "/etc/systemd/network/99-default.network",
            ini(
                ("Network", ["DHCP=no"]),
                (
                    "Match",
                    [
                        "Name=*",
                        "Type=!loopback bridge tunnel vxlan wireguard",
                        "Driver=!veth dummy",
                    ],
                ),
                ("Link", ["Unmanaged=true"]),
            ),
        ),
        file_entry(
            "/etc/default/toolbox",
            f"TOOLBOX_DOCKER_IMAGE={TOOLBOX_IMAGE}\n"
            "TOOLBOX_DOCKER_TAG=latest\n"
            "TOOLBOX_USER=root\n",
        ),
    ]


def render_config(config: dict[str, Any]) -> bytes:
    """Serialize an Ignition config compactly with sorted keys."""
    return json.dumps(config, sort_keys=True, separators=(",", ":")).encode("utf-8")


def control_ignition(fab: Fabricator, control: ControlNode, auto_install: str = "") -> bytes:
    """Generate the Ignition config of a control node.

    Args:
        fab: Fabricator document.
        control: The control node.
        auto_install: Path of the staged tree on the installed OS, or empty
            to skip the first-boot installer unit.

    Returns:
        Ignition JSON.

    Raises:
        MissingFieldError: If a required network field is unset.
        BootConfigError: If the dummy IP is not a /31.
    """
    owner = f"control/{control.name}"
    spec = control.spec
    mgmt_iface = _require(spec.management.interface, "management.interface", owner)
    mgmt_ip = _require(spec.management.ip, "management.ip", owner)
    ext_iface = _require(spec.external.interface, "external.interface", owner)
    ext_ip = _require(spec.external.ip, "external.ip", owner)

    config = _base_config(
        fab,
        control.name,
        "Hedgehog Control Node managed by Fabricator",
        dummy_route(spec.dummy.ip, owner),
        auto_install,
    )
    files = config["storage"]["files"]
    files.append(
        file_entry(
            "/etc/systemd/network/20-mgmt.network",
            _mgmt_network(mgmt_iface, [mgmt_ip, fab.spec.config.control.vip]),
        )
    )
    files.append(
        file_entry(
            "/etc/systemd/network/30-ext.network",
            _ext_network(ext_iface, ext_ip, spec.external.gateway, spec.external.dns),
        )
    )
    files.extend(_tail_files())

    config["storage"]["directories"] = [
        {"path": "/home/core/.kube", "user": {"name": "core"}},
    ]
    config["storage"]["links"] = [
        {
            "path": "/home/core/.kube/config",
            "target": "/etc/rancher/k3s/k3s.yaml",
            "user": {"name": "core"},
            "group": {"name": "core"},
        },
    ]
    return render_config(config)


def node_ignition(fab: Fabricator, node: FabNode, auto_install: str = "") -> bytes:
    """Generate the Ignition config of a worker node.

    Same contract as control_ignition(), without the external interface.
    """
    owner = f"node/{node.name}"
    spec = node.spec
    mgmt_iface = _require(spec.management.interface, "management.interface", owner)
    mgmt_ip = _require(spec.management.ip, "management.ip", owner)

    config = _base_config(
        fab,
        node.name,
        "Hedgehog Node managed by Fabricator",
        dummy_route(spec.dummy.ip, owner),
        auto_install,
    )
    files = config["storage"]["files"]
    files.append(
        file_entry("/etc/systemd/network/20-mgmt.network", _mgmt_network(mgmt_iface, [mgmt_ip]))
    )
    files.extend(_tail_files())
    return render_config(config)


__all__ = [
    "IGNITION_VERSION",
    "BootConfigError",
    "BootConfigFactory",
    "control_ignition",
    "data_url",
    "dummy_route",
    "file_entry",
    "ini",
    "install_unit",
    "node_ignition",
    "render_config",
]
