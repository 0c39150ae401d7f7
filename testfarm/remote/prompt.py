"""
Prompt recognition over an interactive shell's output stream.

The remote shell is idle when it prints ``<user>@<host>:<path>$ ``. Output
arrives in chunks whose boundaries have nothing to do with where prompts
start or end, so the stream is cut at every occurrence of the delimiter
character (``$``) and the accumulated text is matched against the full
prompt pattern after each cut. Because the match always runs against the
whole buffer, a prompt split across any number of chunks is still found.

Classes:
    DelimitedReader: reads decoded text up to and including the next delimiter
    PromptDetector: accumulates segments until the prompt pattern matches
"""

import codecs
import logging
import re
from typing import Callable, Optional, Pattern

logger = logging.getLogger(__name__)

DEFAULT_DELIMITER = "$"
DEFAULT_READ_SIZE = 4096
DEFAULT_MAX_BUFFER_CHARS = 16 * 1024 * 1024
PROMPT_TRAILER = " "


class PromptError(Exception):
    """Base exception for prompt recognition failures."""

    def __init__(self, message: str, buffered: str = ""):
        super().__init__(message)
        self.buffered = buffered


class PromptBufferOverflow(PromptError):
    """Raised when output grows past the buffer limit without a prompt."""

    pass


class PromptStreamClosed(PromptError):
    """Raised when the shell's output stream ends before a prompt appears."""

    pass


def build_prompt_pattern(
    user: str, host: str, delimiter: str = DEFAULT_DELIMITER
) -> Pattern[str]:
    """
    Compile the prompt pattern for one (user, host) pair.

    Group 1 captures everything before the first ``user@host:`` marker on
    the final line, newlines included. The path after the marker may not
    contain a newline and the delimiter must be the last character in the
    buffer, so a stray ``$`` in earlier output is never taken for the prompt.
    """
    marker = re.escape(f"{user}@{host}:")
    return re.compile(
        rf"\A(.*?){marker}[^\n]*{re.escape(delimiter)}\Z",
        re.DOTALL,
    )


class DelimitedReader:
    """
    Buffered reader that returns text up to and including a delimiter.

    ``recv`` is any callable returning up to ``n`` bytes, and ``b""`` once
    the stream has ended (``paramiko.Channel.recv`` behaves this way).
    Text read past the delimiter is kept for the next call.
    """

    def __init__(
        self,
        recv: Callable[[int], bytes],
        delimiter: str = DEFAULT_DELIMITER,
        read_size: int = DEFAULT_READ_SIZE,
        encoding: str = "utf-8",
    ):
        if len(delimiter) != 1:
            raise ValueError(f"Delimiter must be a single character: {delimiter!r}")
        self._recv = recv
        self.delimiter = delimiter
        self.read_size = read_size
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""
        self.closed = False

    @property
    def pending(self) -> str:
        """Text already received but not yet returned."""
        return self._pending

    def read_segment(self) -> str:
        """
        Return the next segment ending with the delimiter.

        Blocks until a delimiter arrives. Once the stream has ended, the
        remaining text is returned without a delimiter, then ``""``.
        """
        while True:
            index = self._pending.find(self.delimiter)
            if index >= 0:
                segment = self._pending[: index + 1]
                self._pending = self._pending[index + 1 :]
                return segment

            if self.closed:
                segment, self._pending = self._pending, ""
                return segment

            data = self._recv(self.read_size)
            if not data:
                self.closed = True
                self._pending += self._decoder.decode(b"", final=True)
                continue
            self._pending += self._decoder.decode(data)


class PromptDetector:
    """
    Incremental matcher that splits shell output into per-command captures.

    Feed it delimiter-terminated segments; it returns the captured text
    once the buffer ends in a complete prompt and resets for the next
    command. The space that follows the prompt's delimiter is dropped from
    the start of the next capture.
    """

    def __init__(
        self,
        user: str,
        host: str,
        delimiter: str = DEFAULT_DELIMITER,
        max_buffer_chars: int = DEFAULT_MAX_BUFFER_CHARS,
    ):
        self.user = user
        self.host = host
        self.delimiter = delimiter
        self.max_buffer_chars = max_buffer_chars
        self.pattern = build_prompt_pattern(user, host, delimiter)
        self._buffer = ""
        self._after_prompt = False

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, segment: str) -> Optional[str]:
        """
        Append a segment and try to match the prompt.

        Returns:
            Text produced since the previous prompt, or None if the buffer
            does not yet end in a prompt

        Raises:
            PromptBufferOverflow: If the buffer exceeds ``max_buffer_chars``
                without ending in a prompt
        """
        if not segment:
            return None

        if self._after_prompt:
            self._after_prompt = False
            if segment.startswith(PROMPT_TRAILER):
                segment = segment[len(PROMPT_TRAILER) :]

        self._buffer += segment
        match = self.pattern.match(self._buffer)
        if match is None:
            if len(self._buffer) > self.max_buffer_chars:
                buffered, self._buffer = self._buffer, ""
                raise PromptBufferOverflow(
                    f"No prompt for {self.user}@{self.host} within "
                    f"{self.max_buffer_chars} characters of output",
                    buffered=buffered,
                )
            return None

        logger.debug(
            f"Prompt matched for {self.user}@{self.host} "
            f"after {len(self._buffer)} characters"
        )
        self._buffer = ""
        self._after_prompt = True
        return match.group(1)

    def wait(self, reader: DelimitedReader) -> str:
        """
        Read from ``reader`` until the prompt appears.

        There is no timeout: a shell that never prints the expected prompt
        blocks this call for as long as it keeps the stream open.

        Raises:
            PromptStreamClosed: If the stream ends first
            PromptBufferOverflow: If output exceeds the buffer limit
        """
        while True:
            segment = reader.read_segment()
            if not segment and reader.closed:
                buffered, self._buffer = self._buffer, ""
                raise PromptStreamClosed(
                    f"Shell output from {self.user}@{self.host} ended "
                    "before the prompt appeared",
                    buffered=buffered,
                )
            captured = self.feed(segment)
            if captured is not None:
                return captured
