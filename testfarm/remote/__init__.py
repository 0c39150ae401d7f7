"""
Remote shell package for testfarm.

Main classes and functions:
- HostDescriptor: one target machine (user, hostname, port)
- SigningAgent: connection to the local SSH agent holding the keys
- RemoteSession: authenticated interactive shell with command/response semantics
- PromptDetector: incremental prompt matcher over chunked shell output
- SetupError: raised when a session cannot be established
"""

from .agent import AgentUnavailableError, SigningAgent
from .hosts import HostDescriptor, HostSpecError
from .prompt import (
    DelimitedReader,
    PromptBufferOverflow,
    PromptDetector,
    PromptError,
    PromptStreamClosed,
    build_prompt_pattern,
)
from .session import CommandTemplates, RemoteSession, SessionOptions, SetupError

__all__ = [
    "AgentUnavailableError",
    "SigningAgent",
    "HostDescriptor",
    "HostSpecError",
    "DelimitedReader",
    "PromptBufferOverflow",
    "PromptDetector",
    "PromptError",
    "PromptStreamClosed",
    "build_prompt_pattern",
    "CommandTemplates",
    "RemoteSession",
    "SessionOptions",
    "SetupError",
]
