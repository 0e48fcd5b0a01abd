"""
Prompt detection for the PTY-backed root shell.

The elevated shell has no message framing: the only signal that ``su`` asked
for a password, that login succeeded, or that a command finished is text in
the output stream. Both scanners here accumulate decoded output and answer
one question per ``feed()``. Detection depends only on the accumulated text,
never on how the stream was split into reads.

Known limitation: a ``#`` anywhere in command output (a comment, a URL
fragment) is taken as the root prompt.
"""

import enum

ROOT_PROMPT_MARKER = "#"
PASSWORD_PROMPT_MARKER = "password"
SU_FAILURE_MARKERS = (
    "authentication failure",
    "incorrect password",
    "su: failed",
    "su: authentication",
)


class LoginState(enum.Enum):
    PENDING = "pending"
    SEND_PASSWORD = "send_password"
    ELEVATED = "elevated"
    FAILED = "failed"


class SuLoginScanner:
    """Tracks the ``su -`` conversation: password prompt, then root prompt or failure.

    When feed() returns SEND_PASSWORD the caller must write the password;
    the buffer is cleared at that point so the prompt text is not matched again.
    """

    def __init__(self):
        self.buffer = ""
        self.password_sent = False

    def feed(self, text: str) -> LoginState:
        self.buffer += text
        lowered = self.buffer.lower()

        if not self.password_sent and PASSWORD_PROMPT_MARKER in lowered:
            self.password_sent = True
            self.buffer = ""
            return LoginState.SEND_PASSWORD

        if self.password_sent and ROOT_PROMPT_MARKER in self.buffer:
            return LoginState.ELEVATED

        if any(marker in lowered for marker in SU_FAILURE_MARKERS):
            return LoginState.FAILED

        return LoginState.PENDING


class ShellPromptScanner:
    """Collects one command's output until the root prompt reappears."""

    def __init__(self):
        self.buffer = ""

    def feed(self, text: str) -> bool:
        """Append output; True once the prompt marker has been seen."""
        self.buffer += text
        return ROOT_PROMPT_MARKER in self.buffer

    def output(self) -> str:
        """Command output: everything between the echoed command line and the prompt line."""
        lines = self.buffer.splitlines()
        if len(lines) <= 2:
            return ""
        return "\n".join(lines[1:-1]).strip()
