"""Tests for request/record models: port forwards, image refs, overrides."""

from datetime import datetime

import pytest
from pydantic import ValidationError

from vmx.models import (
    ImageRef,
    Machine,
    MachineParams,
    NewMachine,
    PortForward,
    VmStatus,
    format_port_forwards,
    parse_port_forwards,
)

# ============================================================================
# PortForward
# ============================================================================


class TestPortForward:
    def test_parse(self) -> None:
        """HOST:GUEST parses into ints."""
        rule = PortForward.parse("8080:80")
        assert (rule.host, rule.guest) == (8080, 80)

    def test_hostfwd_clause(self) -> None:
        assert PortForward.parse("8080:80").hostfwd == "hostfwd=tcp::8080-:80"

    @pytest.mark.parametrize("rule", ["8080", "8080:", ":80", "a:b", "8080:80:1", "70000:80"])
    def test_rejects_malformed(self, rule: str) -> None:
        with pytest.raises(ValueError):
            PortForward.parse(rule)

    def test_list_round_trip(self) -> None:
        rules = parse_port_forwards("8080:80, 2222:22")
        assert [str(r) for r in rules] == ["8080:80", "2222:22"]
        assert format_port_forwards(rules) == "8080:80,2222:22"

    def test_empty_list(self) -> None:
        assert parse_port_forwards(None) == []
        assert parse_port_forwards("") == []
        assert format_port_forwards([]) is None


# ============================================================================
# ImageRef
# ============================================================================


class TestImageRef:
    def test_tag_defaults_to_latest(self) -> None:
        ref = ImageRef.parse("alpine")
        assert (ref.repository, ref.tag) == ("alpine", "latest")

    def test_explicit_tag(self) -> None:
        ref = ImageRef.parse("alpine:3.20")
        assert (ref.repository, ref.tag) == ("alpine", "3.20")

    def test_registry_and_namespace(self) -> None:
        ref = ImageRef.parse("ghcr.io/acme/freebsd:14.3-RELEASE")
        assert (ref.repository, ref.tag) == ("ghcr.io/acme/freebsd", "14.3-RELEASE")

    def test_registry_port_is_not_a_tag(self) -> None:
        """A colon inside the registry host does not start a tag."""
        ref = ImageRef.parse("localhost:5000/freebsd")
        assert (ref.repository, ref.tag) == ("localhost:5000/freebsd", "latest")

    @pytest.mark.parametrize("ref", ["", "has space", "bad|char", "repo:tag:extra"])
    def test_rejects_invalid(self, ref: str) -> None:
        with pytest.raises(ValueError):
            ImageRef.parse(ref)

    def test_str(self) -> None:
        assert str(ImageRef.parse("alpine")) == "alpine:latest"


# ============================================================================
# MachineParams / NewMachine
# ============================================================================


def _machine(**overrides: object) -> Machine:
    values: dict[str, object] = {
        "id": "abc",
        "name": "web1",
        "mac_address": "52:54:00:aa:bb:cc",
        "memory": "2G",
        "cpus": 2,
        "cpu": "host",
        "disk_size": "20G",
        "drive_path": "/disk.img",
        "disk_format": "raw",
        "version": "14.3-RELEASE",
        "status": VmStatus.STOPPED,
        "pid": 0,
        "created_at": datetime(2026, 1, 1),
        "updated_at": datetime(2026, 1, 1),
    }
    values.update(overrides)
    return Machine(**values)


class TestMachineParams:
    @pytest.mark.parametrize("memory", ["2G", "512M", "16G"])
    def test_memory_accepted(self, memory: str) -> None:
        assert MachineParams(memory=memory).memory == memory

    @pytest.mark.parametrize("memory", ["2", "2GB", "2T", "two"])
    def test_memory_rejected(self, memory: str) -> None:
        with pytest.raises(ValidationError):
            MachineParams(memory=memory)

    def test_cpus_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            MachineParams(cpus=0)

    def test_port_forward_normalized(self) -> None:
        assert MachineParams(port_forward="8080:80, 2222:22").port_forward == "8080:80,2222:22"

    def test_port_forward_rejected(self) -> None:
        with pytest.raises(ValidationError):
            MachineParams(port_forward="8080-80")

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            MachineParams(gpu="yes")  # type: ignore[call-arg]

    def test_apply_overlays_only_given_fields(self) -> None:
        """None fields keep stored values."""
        machine = _machine()
        effective = MachineParams(memory="4G", cpus=4, disk_format="qcow2", bridge="br0").apply(machine)
        assert effective.memory == "4G"
        assert effective.cpus == 4
        assert effective.disk_format == "qcow2"
        assert effective.bridge == "br0"
        assert effective.cpu == "host"
        assert effective.drive_path == "/disk.img"
        # Original record untouched
        assert machine.memory == "2G"

    def test_machine_port_forwards(self) -> None:
        machine = _machine(port_forward="8080:80")
        assert machine.port_forwards == [PortForward(host=8080, guest=80)]


class TestNewMachine:
    def test_defaults(self) -> None:
        request = NewMachine(image="alpine")
        assert (request.cpu, request.cpus, request.memory, request.disk_size) == ("host", 2, "2G", "20G")

    def test_volume_size_validated(self) -> None:
        with pytest.raises(ValidationError):
            NewMachine(image="alpine", volume="data", volume_size="lots")
