"""
Configuration management for testfarm.

Configuration is layered YAML merged with OmegaConf, lowest precedence
first:

- built-in defaults (DEFAULT_CONFIG)
- system: $XDG_CONFIG_DIRS/testfarm/config.yaml (default /etc/xdg)
- user: $XDG_CONFIG_HOME/testfarm/config.yaml (default ~/.config)
- project: ./.testfarm.yaml
- an explicit --config file
- command-line overrides

The merged tree is then validated into a FarmSettings object.
"""

# pylint: disable=broad-exception-caught

import getpass
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from omegaconf import DictConfig, OmegaConf

from .farm import JOB_ORDERS, SETUP_ERROR_POLICIES
from .remote import CommandTemplates, HostDescriptor, HostSpecError, SessionOptions

logger = logging.getLogger(__name__)

PROJECT_CONFIG_NAME = ".testfarm.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "hosts": [],
    "jobs": [],
    "jobs_file": None,
    "job_order": "reverse",
    "on_setup_error": "abort",
    "test_timeout": "1200s",
    "commands": {
        "prepare": ["cd ~/dev/go/src/github.com/juju/juju/", "cd {job}"],
        "test": "go test -test.timeout={timeout} ./...",
    },
    "ssh": {
        "port": 22,
        "agent_socket_env": "SSH_AUTH_SOCK",
        "connect_timeout": 30,
        "term": "xterm",
        "width": 80,
        "height": 40,
        "disable_echo": True,
        "strict_host_key_checking": False,
        "known_hosts": "~/.ssh/known_hosts",
    },
    "prompt": {
        "delimiter": "$",
        "read_size": 4096,
        "max_buffer_chars": 16 * 1024 * 1024,
        "encoding": "utf-8",
    },
    "poll_interval": 0.5,
    "verbosity": 0,
}


class ConfigLoadError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


@dataclass
class FarmSettings:
    """Validated settings for one run."""

    hosts: List[HostDescriptor]
    jobs: List[str]
    job_order: str = "reverse"
    on_setup_error: str = "abort"
    commands: CommandTemplates = field(default_factory=CommandTemplates)
    session_options: SessionOptions = field(default_factory=SessionOptions)
    poll_interval: float = 0.5
    verbosity: int = 0


def get_system_config_paths() -> List[Path]:
    """System config files in increasing precedence."""
    xdg_config_dirs = os.environ.get("XDG_CONFIG_DIRS", "/etc/xdg")
    dirs = [Path(d) / "testfarm" / "config.yaml" for d in xdg_config_dirs.split(":")]
    # First entry in XDG_CONFIG_DIRS is the most important
    return list(reversed(dirs))


def get_user_config_path() -> Path:
    """Get the path to the user's testfarm configuration file."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home) / "testfarm" / "config.yaml"
    return Path.home() / ".config" / "testfarm" / "config.yaml"


def get_project_config_path(start: Optional[Path] = None) -> Path:
    return (start or Path.cwd()) / PROJECT_CONFIG_NAME


def _load_optional(path: Path) -> Optional[DictConfig]:
    """Load an implicit config layer, warning instead of failing."""
    if not path.exists():
        return None
    try:
        config = OmegaConf.load(path)
    except Exception as e:
        logger.warning(f"Failed to load config {path}: {e}")
        return None
    if not isinstance(config, DictConfig):
        logger.warning(f"Ignoring config {path}: top level must be a mapping")
        return None
    logger.debug(f"Loaded config from {path}")
    return config


def load_config(
    config_file: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    include_implicit: bool = True,
) -> DictConfig:
    """
    Load and merge every configuration layer.

    Args:
        config_file: Optional explicit config file (must exist)
        overrides: Values from the command line; None values are ignored
        include_implicit: Whether to read system, user and project files

    Returns:
        Merged configuration

    Raises:
        ConfigLoadError: If the explicit file is missing or invalid
    """
    layers = [OmegaConf.create(DEFAULT_CONFIG)]

    if include_implicit:
        paths = get_system_config_paths() + [
            get_user_config_path(),
            get_project_config_path(),
        ]
        for path in paths:
            layer = _load_optional(path)
            if layer is not None:
                layers.append(layer)

    if config_file:
        path = Path(config_file).expanduser()
        if not path.exists():
            raise ConfigLoadError(f"Config file not found: {path}")
        try:
            layer = OmegaConf.load(path)
        except Exception as e:
            raise ConfigLoadError(f"Invalid YAML in configuration file {path}: {e}")
        if not isinstance(layer, DictConfig):
            raise ConfigLoadError(
                f"Configuration file must contain a YAML dictionary: {path}"
            )
        layers.append(layer)

    if overrides:
        cleaned = {k: v for k, v in overrides.items() if v is not None}
        if cleaned:
            layers.append(OmegaConf.create(cleaned))

    try:
        return OmegaConf.merge(*layers)
    except Exception as e:
        raise ConfigLoadError(f"Cannot merge configuration: {e}")


def load_job_catalogue(jobs: List[str], jobs_file: Optional[str] = None) -> List[str]:
    """
    Combine inline jobs and a jobs file into one catalogue.

    The jobs file has one identifier per line; blank lines and ``#``
    comments are skipped. Duplicates keep their first position.

    Raises:
        ConfigLoadError: If the jobs file cannot be read
    """
    catalogue = [str(job).strip() for job in jobs if str(job).strip()]

    if jobs_file:
        path = Path(jobs_file).expanduser()
        try:
            lines = path.read_text().splitlines()
        except OSError as e:
            raise ConfigLoadError(f"Cannot read jobs file {path}: {e}")
        for line in lines:
            line = line.split("#", 1)[0].strip()
            if line:
                catalogue.append(line)

    return list(dict.fromkeys(catalogue))


def build_settings(config: DictConfig, require_jobs: bool = True) -> FarmSettings:
    """
    Validate a merged configuration.

    Raises:
        ConfigLoadError: Listing every problem found
    """
    try:
        data = OmegaConf.to_container(config, resolve=True)
    except Exception as e:
        raise ConfigLoadError(f"Cannot resolve configuration: {e}")
    errors = []
    user = getpass.getuser()
    ssh = data.get("ssh") or {}
    prompt = data.get("prompt") or {}

    try:
        default_port = int(ssh.get("port", 22))
    except (TypeError, ValueError):
        errors.append(f"Invalid ssh.port: {ssh.get('port')}")
        default_port = 22

    hosts = []
    host_entries = data.get("hosts") or []
    if not isinstance(host_entries, list):
        errors.append(f"hosts must be a list of host entries, got {host_entries!r}")
        host_entries = []
    for entry in host_entries:
        try:
            hosts.append(
                HostDescriptor.parse(entry, default_user=user, default_port=default_port)
            )
        except HostSpecError as e:
            errors.append(str(e))
    if not hosts and not errors:
        errors.append("No hosts configured")

    jobs = []
    job_entries = data.get("jobs") or []
    if not isinstance(job_entries, list):
        errors.append(f"jobs must be a list of job identifiers, got {job_entries!r}")
    else:
        try:
            jobs = load_job_catalogue(job_entries, data.get("jobs_file"))
        except ConfigLoadError as e:
            errors.append(str(e))
        else:
            if require_jobs and not jobs:
                errors.append("No jobs configured")

    job_order = data.get("job_order")
    if job_order not in JOB_ORDERS:
        errors.append(
            f"Invalid job_order '{job_order}'. Choose from: {', '.join(JOB_ORDERS)}"
        )

    on_setup_error = data.get("on_setup_error")
    if on_setup_error not in SETUP_ERROR_POLICIES:
        errors.append(
            f"Invalid on_setup_error '{on_setup_error}'. "
            f"Choose from: {', '.join(SETUP_ERROR_POLICIES)}"
        )

    commands_data = data.get("commands") or {}
    prepare = commands_data.get("prepare") or []
    if not isinstance(prepare, list):
        errors.append("commands.prepare must be a list of commands")
        prepare = []
    test_command = commands_data.get("test")
    if not test_command:
        errors.append("commands.test is required")
    else:
        for template in [*prepare, test_command]:
            try:
                str(template).format(job="", timeout="", user="", host="")
            except (KeyError, IndexError, ValueError) as e:
                errors.append(
                    f"Invalid command template '{template}': unknown placeholder {e}"
                )

    delimiter = str(prompt.get("delimiter", "$"))
    if len(delimiter) != 1:
        errors.append(f"prompt.delimiter must be one character, got '{delimiter}'")

    try:
        session_options = SessionOptions(
            agent_socket_env=str(ssh.get("agent_socket_env", "SSH_AUTH_SOCK")),
            connect_timeout=float(ssh.get("connect_timeout", 30)),
            term=str(ssh.get("term", "xterm")),
            width=int(ssh.get("width", 80)),
            height=int(ssh.get("height", 40)),
            disable_echo=bool(ssh.get("disable_echo", True)),
            strict_host_key_checking=bool(ssh.get("strict_host_key_checking", False)),
            known_hosts=ssh.get("known_hosts"),
            delimiter=delimiter,
            read_size=int(prompt.get("read_size", 4096)),
            max_buffer_chars=int(prompt.get("max_buffer_chars", 16 * 1024 * 1024)),
            encoding=str(prompt.get("encoding", "utf-8")),
        )
        poll_interval = float(data.get("poll_interval", 0.5))
        verbosity = int(data.get("verbosity") or 0)
    except (TypeError, ValueError) as e:
        errors.append(f"Invalid numeric setting: {e}")

    if errors:
        raise ConfigLoadError(
            "Configuration errors found:\n"
            + "\n".join(f"  - {error}" for error in errors)
        )

    return FarmSettings(
        hosts=hosts,
        jobs=jobs,
        job_order=job_order,
        on_setup_error=on_setup_error,
        commands=CommandTemplates(
            prepare=[str(c) for c in prepare],
            test=str(test_command),
            timeout=str(data.get("test_timeout", "1200s")),
        ),
        session_options=session_options,
        poll_interval=poll_interval,
        verbosity=verbosity,
    )


def setup_logging(verbosity: int = 0):
    """
    Configure the root logger from the number of ``-v`` flags.

    Args:
        verbosity: 0 = ERROR, 1 = WARNING, 2 = INFO, 3 or more = DEBUG
    """
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicate output
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    format_str = "%(levelname)s: %(message)s"
    if verbosity == 1:
        level = logging.WARNING
    elif verbosity == 2:
        level = logging.INFO
    elif verbosity >= 3:
        level = logging.DEBUG
        format_str = "%(levelname)s:%(name)s: %(message)s"
    else:
        level = logging.ERROR

    # paramiko's transport logging is noisy below DEBUG
    logging.getLogger("paramiko").setLevel(max(level, logging.WARNING))

    root_logger.setLevel(level)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(format_str))
    root_logger.addHandler(handler)


def example_config() -> Dict[str, Any]:
    """Example user configuration written by ``testfarm config init``."""
    return {
        "hosts": ["buildbox1", "buildbox2", f"{getpass.getuser()}@buildbox3:2222"],
        "jobs": ["apiserver", "worker", "state"],
        "jobs_file": None,
        "job_order": "reverse",
        "on_setup_error": "abort",
        "test_timeout": "1200s",
        "commands": dict(DEFAULT_CONFIG["commands"]),
        "ssh": {"agent_socket_env": "SSH_AUTH_SOCK", "connect_timeout": 30},
        "verbosity": 0,
    }
