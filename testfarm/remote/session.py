"""
Interactive SSH shell sessions driven by prompt recognition.

A RemoteSession owns one authenticated SSH transport to one host and one
interactive shell channel on it. Commands are written to the shell as
plain lines; a command is finished when the shell prints its prompt
again, and everything printed in between is the command's output.
"""

import logging
import socket
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import paramiko

from .agent import AgentUnavailableError, SigningAgent
from .hosts import HostDescriptor
from .prompt import (
    DEFAULT_DELIMITER,
    DEFAULT_MAX_BUFFER_CHARS,
    DEFAULT_READ_SIZE,
    DelimitedReader,
    PromptDetector,
    PromptError,
)

logger = logging.getLogger(__name__)


class SetupError(Exception):
    """Raised when a session cannot be established on a host."""

    def __init__(self, host, step: str, cause: Optional[BaseException] = None):
        self.host = host
        self.step = step
        self.cause = cause
        message = f"{step} failed for {host}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


@dataclass
class CommandTemplates:
    """
    Shell commands that run one job.

    Each template is formatted with ``job``, ``timeout``, ``user`` and
    ``host``. The prepare commands run first, in order, and their output
    is discarded; the output of the test command is the job's result.
    """

    prepare: List[str] = field(
        default_factory=lambda: ["cd ~/dev/go/src/github.com/juju/juju/", "cd {job}"]
    )
    test: str = "go test -test.timeout={timeout} ./..."
    timeout: str = "1200s"

    def render(self, job: str, host: HostDescriptor) -> List[str]:
        values = {
            "job": job,
            "timeout": self.timeout,
            "user": host.user,
            "host": host.hostname,
        }
        return [command.format(**values) for command in [*self.prepare, self.test]]


@dataclass
class SessionOptions:
    """Connection and terminal settings shared by every session."""

    agent_socket_env: str = "SSH_AUTH_SOCK"
    connect_timeout: float = 30.0
    term: str = "xterm"
    width: int = 80
    height: int = 40
    disable_echo: bool = True
    strict_host_key_checking: bool = False
    known_hosts: Optional[str] = "~/.ssh/known_hosts"
    delimiter: str = DEFAULT_DELIMITER
    read_size: int = DEFAULT_READ_SIZE
    max_buffer_chars: int = DEFAULT_MAX_BUFFER_CHARS
    encoding: str = "utf-8"


class RemoteSession:
    """One live interactive shell on one host."""

    def __init__(
        self,
        host: HostDescriptor,
        channel,
        transport=None,
        agent=None,
        commands: Optional[CommandTemplates] = None,
        options: Optional[SessionOptions] = None,
    ):
        self.host = host
        self.channel = channel
        self.transport = transport
        self.agent = agent
        self.commands = commands or CommandTemplates()
        self.options = options or SessionOptions()
        self.detector = PromptDetector(
            host.user,
            host.hostname,
            delimiter=self.options.delimiter,
            max_buffer_chars=self.options.max_buffer_chars,
        )
        self.reader = DelimitedReader(
            channel.recv,
            delimiter=self.options.delimiter,
            read_size=self.options.read_size,
            encoding=self.options.encoding,
        )
        self.closed = False

    @classmethod
    def establish(
        cls,
        host: HostDescriptor,
        agent: Optional[SigningAgent] = None,
        commands: Optional[CommandTemplates] = None,
        options: Optional[SessionOptions] = None,
    ) -> "RemoteSession":
        """
        Open an authenticated interactive shell on ``host``.

        Connects, authenticates with keys from the signing agent, opens a
        channel, requests a pseudo-terminal, starts the shell and waits for
        the first prompt so the login banner is skipped. Anything opened
        before a failing step is released again.

        Args:
            host: Target machine
            agent: Signing agent; connected from the environment if omitted.
                The session takes ownership and closes it.
            commands: Command templates for run_job
            options: Connection and terminal settings

        Raises:
            SetupError: If any step fails
        """
        options = options or SessionOptions()
        opened = []

        try:
            if agent is None:
                with _setup_step(host, "SSH agent connection"):
                    agent = SigningAgent.from_environment(options.agent_socket_env)
            opened.append(agent)

            with _setup_step(host, "Connection"):
                sock = socket.create_connection(
                    host.address, timeout=options.connect_timeout
                )
            opened.append(sock)

            with _setup_step(host, "SSH handshake"):
                transport = paramiko.Transport(sock)
                opened.append(transport)
                transport.start_client(timeout=options.connect_timeout)

            with _setup_step(host, "Host key verification"):
                _verify_host_key(host, transport, options)

            with _setup_step(host, "Authentication"):
                _authenticate(host, transport, agent)

            with _setup_step(host, "Session creation"):
                channel = transport.open_session(timeout=options.connect_timeout)
            opened.append(channel)

            with _setup_step(host, "Pseudo-terminal request"):
                channel.get_pty(
                    term=options.term,
                    width=options.width,
                    height=options.height,
                )

            with _setup_step(host, "Shell start"):
                channel.invoke_shell()
                # Commands may legitimately run for a long time
                channel.settimeout(None)

            session = cls(host, channel, transport, agent, commands, options)
            with _setup_step(host, "Login prompt"):
                banner = session.await_prompt()
            logger.debug(f"Skipped {len(banner)} characters of login banner on {host}")

            if options.disable_echo:
                with _setup_step(host, "Terminal setup"):
                    session.send_command("stty -echo")
                    session.await_prompt()
        except SetupError:
            for resource in reversed(opened):
                _close_quietly(resource)
            raise

        logger.info(f"Established session on {host}")
        return session

    def send_command(self, text: str):
        """Write ``text`` and a newline to the shell without waiting."""
        logger.info(f"[{self.host.hostname}] {text}")
        self.channel.sendall(f"{text}\n".encode(self.options.encoding))

    def await_prompt(self) -> str:
        """Block until the prompt reappears and return the output before it."""
        return self.detector.wait(self.reader)

    def run_job(self, job: str) -> str:
        """
        Run one job and return the output of its test command.

        Output of the preparation commands is discarded. A failing remote
        test is not distinguished from a passing one; its output is simply
        returned.
        """
        *prepare, test = self.commands.render(job, self.host)
        for command in prepare:
            self.send_command(command)
            self.await_prompt()
        self.send_command(test)
        return self.await_prompt()

    def close(self):
        """Release the channel, the transport and the agent connection."""
        if self.closed:
            logger.warning(f"Session on {self.host} closed more than once")
            return
        self.closed = True
        for resource in (self.channel, self.transport, self.agent):
            if resource is not None:
                _close_quietly(resource)
        logger.debug(f"Closed session on {self.host}")

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"RemoteSession({self.host}, {state})"


@contextmanager
def _setup_step(host: HostDescriptor, step: str):
    """Turn any failure inside the block into a SetupError for ``step``."""
    try:
        yield
    except SetupError:
        raise
    except (
        AgentUnavailableError,
        PromptError,
        paramiko.SSHException,
        OSError,
        EOFError,
    ) as e:
        logger.debug(f"{step} failed for {host}: {e!r}")
        raise SetupError(host, step, e) from e


def _verify_host_key(host: HostDescriptor, transport, options: SessionOptions):
    server_key = transport.get_remote_server_key()
    if not options.strict_host_key_checking:
        logger.debug(
            f"Accepting {server_key.get_name()} host key for {host.hostname} unchecked"
        )
        return

    known_hosts = paramiko.HostKeys()
    if options.known_hosts:
        path = Path(options.known_hosts).expanduser()
        if path.exists():
            known_hosts.load(str(path))

    lookup = host.hostname
    if host.port != 22:
        lookup = f"[{host.hostname}]:{host.port}"

    expected = known_hosts.lookup(lookup)
    if expected is None:
        raise paramiko.SSHException(
            f"Host key for {lookup} not found in {options.known_hosts}"
        )
    if not known_hosts.check(lookup, server_key):
        raise paramiko.BadHostKeyException(
            host.hostname, server_key, expected.get(server_key.get_name(), server_key)
        )


def _authenticate(host: HostDescriptor, transport, agent):
    """Try each agent key in turn until the server accepts one."""
    for key in agent.signers():
        try:
            transport.auth_publickey(host.user, key)
        except paramiko.AuthenticationException:
            logger.debug(f"Key {key.get_name()} rejected by {host.hostname}")
            continue
        if transport.is_authenticated():
            logger.debug(f"Authenticated to {host} with {key.get_name()} key")
            return
    raise paramiko.AuthenticationException(
        f"No agent key accepted for {host.user}@{host.hostname}"
    )


def _close_quietly(resource):
    try:
        resource.close()
    except (OSError, paramiko.SSHException) as e:
        logger.debug(f"Ignoring error while closing {resource!r}: {e}")
