"""
Connection to the local SSH agent that signs authentication requests.

The agent holds the key material; this side only asks it for its public
keys and hands them to paramiko, which forwards signing requests over
the same socket.
"""

import logging
import os
import socket

import paramiko
from paramiko.agent import AgentSSH

logger = logging.getLogger(__name__)

DEFAULT_AGENT_SOCKET_ENV = "SSH_AUTH_SOCK"


class AgentUnavailableError(Exception):
    """Raised when the signing agent cannot be reached or has no keys."""

    pass


class SigningAgent(AgentSSH):
    """
    Client for an SSH agent listening on a unix socket.

    Works like ``paramiko.Agent`` but takes the socket path explicitly, so
    the environment variable that names it is configurable.
    """

    def __init__(self, socket_path: str):
        super().__init__()
        self.socket_path = socket_path
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            self._sock.connect(socket_path)
            self._connect(self._sock)
        except (OSError, paramiko.SSHException) as e:
            self._sock.close()
            raise AgentUnavailableError(
                f"Cannot connect to SSH agent at {socket_path}: {e}"
            ) from e
        logger.debug(f"Connected to SSH agent at {socket_path}")

    @classmethod
    def from_environment(cls, env_var: str = DEFAULT_AGENT_SOCKET_ENV):
        """Connect to the agent whose socket path is in ``env_var``."""
        socket_path = os.environ.get(env_var)
        if not socket_path:
            raise AgentUnavailableError(
                f"{env_var} is not set; start an SSH agent and add your keys"
            )
        return cls(socket_path)

    def signers(self):
        """Keys the agent can sign with, in the agent's order."""
        keys = self.get_keys()
        if not keys:
            raise AgentUnavailableError(
                f"SSH agent at {self.socket_path} holds no keys (try ssh-add)"
            )
        return keys

    def close(self):
        """Close the agent connection."""
        self._close()
        self._sock.close()
