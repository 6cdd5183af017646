"""Tests for Ignition config generation."""

import base64
import json
from typing import Any

import pytest

from fab_installer.bootconfig.ignition import (
    IGNITION_VERSION,
    BootConfigError,
    control_ignition,
    dummy_route,
    ini,
    node_ignition,
)
from fab_installer.errors import MissingFieldError
from fab_installer.fab.io import FabDocuments, parse_fab

from conftest import fab_yaml_docs

AUTO = "/opt/hedgehog/install/control--control-1--install"


def _files(config: dict[str, Any]) -> dict[str, str]:
    """Decoded contents of every inline file, keyed by path."""
    result = {}
    for entry in config["storage"]["files"]:
        source = entry.get("contents", {}).get("source")
        if source:
            result[entry["path"]] = base64.b64decode(source.split(",", 1)[1]).decode()
    return result


def _units(config: dict[str, Any]) -> dict[str, dict[str, Any]]:
    return {u["name"]: u for u in config["systemd"]["units"]}


class TestHelpers:
    """Tests for ini and dummy_route."""

    def test_ini(self) -> None:
        """Sections should be separated by blank lines."""
        assert ini(("A", ["x=1"]), ("B", ["y=2", "z=3"])) == "[A]\nx=1\n\n[B]\ny=2\nz=3\n"

    def test_dummy_route(self) -> None:
        """The gateway should be the second address of the /31."""
        assert dummy_route("10.0.0.0/31", "node/n") == ("10.0.0.0/31", "10.0.0.1")

    def test_dummy_route_requires_slash_31(self) -> None:
        """Other prefix lengths should be rejected."""
        with pytest.raises(BootConfigError):
            dummy_route("10.0.0.0/30", "node/n")

    def test_dummy_route_missing(self) -> None:
        """An unset dummy IP should be reported as a missing field."""
        with pytest.raises(MissingFieldError):
            dummy_route(None, "node/n")


class TestControlIgnition:
    """Tests for control_ignition."""

    def test_manual_config(self, fab_docs: FabDocuments) -> None:
        """Manual configs should carry user, network and no install unit."""
        config = json.loads(control_ignition(fab_docs.fab, fab_docs.get_control("control-1")))

        assert config["ignition"]["version"] == IGNITION_VERSION
        core = config["passwd"]["users"][0]
        assert core["name"] == "core"
        assert core["passwordHash"] == "$5$salt$hash"
        assert core["sshAuthorizedKeys"] == ["ssh-ed25519 AAAA test@example"]

        units = _units(config)
        assert units["locksmithd.service"]["mask"] is True
        assert "fab-install.service" not in units

        files = _files(config)
        assert files["/etc/hostname"] == "control-1"
        mgmt = files["/etc/systemd/network/20-mgmt.network"]
        assert "Name=enp2s1" in mgmt
        assert "Address=172.30.0.5/21" in mgmt
        assert "Address=172.30.0.1/32" in mgmt
        ext = files["/etc/systemd/network/30-ext.network"]
        assert "Gateway=192.168.1.1" in ext
        assert "DNS=1.1.1.1" in ext
        assert "Gateway=10.0.0.1" in files["/etc/systemd/network/11-dummy.network"]
        assert config["storage"]["links"][0]["target"] == "/etc/rancher/k3s/k3s.yaml"

    def test_install_unit(self, fab_docs: FabDocuments) -> None:
        """Image builds should run the staged installer from its directory."""
        config = json.loads(
            control_ignition(fab_docs.fab, fab_docs.get_control("control-1"), AUTO)
        )

        unit = _units(config)["fab-install.service"]
        assert unit["enabled"] is True
        assert f"ExecStart={AUTO}/fab-recipe install -v" in unit["contents"]
        assert f"WorkingDirectory={AUTO}" in unit["contents"]

    def test_external_dhcp(self) -> None:
        """DHCP on the external interface should drop static settings."""
        raw = fab_yaml_docs()
        raw[1]["spec"]["external"] = {"interface": "enp2s0", "ip": "dhcp"}
        docs = parse_fab(raw)

        config = json.loads(control_ignition(docs.fab, docs.get_control("control-1")))
        ext = _files(config)["/etc/systemd/network/30-ext.network"]
        assert "DHCP=ipv4" in ext
        assert "Address=" not in ext

    def test_deterministic(self, fab_docs: FabDocuments) -> None:
        """Equal inputs should give byte-identical configs."""
        control = fab_docs.get_control("control-1")
        assert control_ignition(fab_docs.fab, control, AUTO) == control_ignition(
            fab_docs.fab, control, AUTO
        )

    def test_missing_external(self) -> None:
        """Control nodes need an external interface."""
        raw = fab_yaml_docs()
        del raw[1]["spec"]["external"]
        docs = parse_fab(raw)

        with pytest.raises(MissingFieldError) as exc_info:
            control_ignition(docs.fab, docs.get_control("control-1"))
        assert exc_info.value.field == "external.interface"


class TestNodeIgnition:
    """Tests for node_ignition."""

    def test_node_config(self, fab_docs: FabDocuments) -> None:
        """Worker configs should have management but no external network."""
        config = json.loads(node_ignition(fab_docs.fab, fab_docs.get_node("node-1")))

        files = _files(config)
        assert files["/etc/hostname"] == "node-1"
        assert "Address=172.30.0.8/21" in files["/etc/systemd/network/20-mgmt.network"]
        assert "/etc/systemd/network/30-ext.network" not in files
        assert "links" not in config["storage"]

    def test_missing_management(self) -> None:
        """Worker nodes need a management address."""
        raw = fab_yaml_docs()
        del raw[2]["spec"]["management"]["ip"]
        docs = parse_fab(raw)

        with pytest.raises(MissingFieldError):
            node_ignition(docs.fab, docs.get_node("node-1"))
