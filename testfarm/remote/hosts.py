"""
Host descriptors for the machines in the farm.

A host is written in configuration as ``host``, ``user@host``,
``user@host:port`` or ``ssh://user@host:port``, or as a mapping with
``hostname``, ``user`` and ``port`` keys. The user defaults to the
invoking user's name, which is also what the remote prompt shows.
"""

import getpass
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = 22


class HostSpecError(ValueError):
    """Raised when a host entry cannot be parsed."""

    pass


@dataclass(frozen=True)
class HostDescriptor:
    """One target machine."""

    hostname: str
    user: str
    port: int = DEFAULT_SSH_PORT

    @classmethod
    def parse(
        cls,
        spec: Union[str, Mapping[str, Any]],
        default_user: Optional[str] = None,
        default_port: int = DEFAULT_SSH_PORT,
    ) -> "HostDescriptor":
        """
        Build a descriptor from a configuration entry.

        Args:
            spec: Host string or mapping
            default_user: User to fall back to (default: invoking user)
            default_port: Port to fall back to

        Raises:
            HostSpecError: If the entry is empty or malformed
        """
        if default_user is None:
            default_user = getpass.getuser()

        if isinstance(spec, Mapping):
            hostname = spec.get("hostname") or spec.get("host")
            if not hostname:
                raise HostSpecError(f"Host entry missing 'hostname': {dict(spec)}")
            try:
                port = int(spec.get("port") or default_port)
            except (TypeError, ValueError):
                raise HostSpecError(f"Invalid port in host entry: {dict(spec)}")
            return cls(str(hostname), str(spec.get("user") or default_user), port)

        if not isinstance(spec, str) or not spec.strip():
            raise HostSpecError(f"Invalid host entry: {spec!r}")

        text = spec.strip()
        if "://" not in text:
            text = f"ssh://{text}"
        parsed = urlparse(text)

        if parsed.scheme != "ssh":
            raise HostSpecError(
                f"Protocol '{parsed.scheme}' not supported for host {spec!r}"
            )
        if not parsed.hostname:
            raise HostSpecError(f"Host entry must include a hostname: {spec!r}")
        try:
            explicit_port = parsed.port
        except ValueError:
            raise HostSpecError(f"Invalid port in host entry: {spec!r}")
        port = default_port if explicit_port is None else explicit_port

        # urlparse lowercases hostname; keep the spelling the prompt will show
        netloc_host = parsed.netloc.rsplit("@", 1)[-1]
        if explicit_port is not None:
            netloc_host = netloc_host.rsplit(":", 1)[0]
        # IPv6 literals keep their brackets in the netloc
        hostname = netloc_host.strip("[]")

        return cls(hostname, parsed.username or default_user, port)

    @property
    def address(self):
        """(hostname, port) tuple for socket connections."""
        return (self.hostname, self.port)

    def __str__(self) -> str:
        if self.port == DEFAULT_SSH_PORT:
            return f"{self.user}@{self.hostname}"
        if ":" in self.hostname:
            return f"{self.user}@[{self.hostname}]:{self.port}"
        return f"{self.user}@{self.hostname}:{self.port}"
