"""
Tests for host descriptor parsing.
"""

import pytest

from testfarm.remote import HostDescriptor, HostSpecError


class TestHostDescriptor:
    """Test parsing of host entries from configuration."""

    def test_bare_hostname_uses_invoking_user(self):
        """A bare hostname gets the invoking user and port 22."""
        host = HostDescriptor.parse("homework1", default_user="alice")
        assert host == HostDescriptor("homework1", "alice", 22)

    def test_user_and_port(self):
        """user@host:port is split into its parts."""
        host = HostDescriptor.parse("bob@homework2:2222", default_user="alice")
        assert host.user == "bob"
        assert host.hostname == "homework2"
        assert host.port == 2222
        assert host.address == ("homework2", 2222)

    def test_ssh_url(self):
        """ssh:// URLs are accepted."""
        host = HostDescriptor.parse("ssh://bob@build.example.com", default_user="alice")
        assert host == HostDescriptor("build.example.com", "bob")

    def test_hostname_case_preserved(self):
        """The prompt shows the hostname as the user typed it."""
        host = HostDescriptor.parse("BuildBox", default_user="alice")
        assert host.hostname == "BuildBox"

    def test_default_port_from_caller(self):
        """The caller's default port applies when none is given."""
        host = HostDescriptor.parse("box", default_user="alice", default_port=2200)
        assert host.port == 2200

    def test_mapping_entry(self):
        """A mapping entry sets every field."""
        host = HostDescriptor.parse(
            {"hostname": "box", "user": "carol", "port": 2022}, default_user="alice"
        )
        assert host == HostDescriptor("box", "carol", 2022)

    def test_mapping_defaults(self):
        """Missing mapping fields fall back to the defaults."""
        host = HostDescriptor.parse({"hostname": "box"}, default_user="alice")
        assert host == HostDescriptor("box", "alice", 22)

    @pytest.mark.parametrize(
        "spec",
        ["", "   ", "ftp://box", "alice@box:notaport", {"user": "alice"}, 42],
    )
    def test_invalid_entries(self, spec):
        """Malformed entries raise HostSpecError."""
        with pytest.raises(HostSpecError):
            HostDescriptor.parse(spec, default_user="alice")

    def test_str(self):
        """The default port is left out of the display form."""
        assert str(HostDescriptor("box", "alice")) == "alice@box"
        assert str(HostDescriptor("box", "alice", 2222)) == "alice@box:2222"

    def test_ipv6_literal(self):
        """Brackets are stripped so the address can be dialled."""
        host = HostDescriptor.parse("alice@[::1]:2222")
        assert host == HostDescriptor("::1", "alice", 2222)
        assert host.address == ("::1", 2222)
        assert str(host) == "alice@[::1]:2222"

    def test_ipv6_literal_default_port(self):
        """A bracketed IPv6 literal without a port uses port 22."""
        host = HostDescriptor.parse("[fe80::1]", default_user="alice")
        assert host.address == ("fe80::1", 22)
