"""Scripted stand-ins for paramiko channels and transports."""

from collections import deque
from unittest.mock import MagicMock

import paramiko

# Marks end-of-stream inside a reply script
EOF = object()

# Bound at import so specs stay valid while a test patches paramiko.Transport
_TRANSPORT_CLASS = paramiko.Transport


class FakeChannel:
    """A paramiko.Channel look-alike driven by a reply script.

    ``initial`` chunks are readable immediately. Each sendall() consumes the
    next entry of ``replies`` (a list of byte chunks, possibly containing
    EOF) and makes it readable.
    """

    def __init__(self, replies=None, initial=None, stderr=None, exit_status=None):
        self._replies = deque(replies or [])
        self._stdout = deque(initial or [])
        self._stderr = deque(stderr or [])
        self.exit_status = exit_status
        self.sent = []
        self.exec_commands = []
        self.pty = None
        self.shell_invoked = False
        self.eof_sent = False
        self.closed = False
        self.eof_received = False

    def get_pty(self, term="vt100", width=80, height=24, width_pixels=0, height_pixels=0):
        self.pty = (term, width, height)

    def invoke_shell(self):
        self.shell_invoked = True

    def exec_command(self, command):
        self.exec_commands.append(command)

    def sendall(self, data):
        if self.closed:
            raise OSError("Socket is closed")
        self.sent.append(data.decode("utf-8"))
        if self._replies:
            self._stdout.extend(self._replies.popleft())

    def recv_ready(self):
        while self._stdout and self._stdout[0] is EOF:
            self._stdout.popleft()
            self.eof_received = True
        return bool(self._stdout)

    def recv(self, nbytes):
        if not self.recv_ready():
            return b""
        return self._stdout.popleft()

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, nbytes):
        return self._stderr.popleft() if self._stderr else b""

    def exit_status_ready(self):
        return self.closed or self.exit_status is not None

    def recv_exit_status(self):
        return self.exit_status if self.exit_status is not None else -1

    def shutdown_write(self):
        self.eof_sent = True

    def close(self):
        self.closed = True


def make_mock_transport(channels=(), active=True):
    """MagicMock transport whose open_session() hands out ``channels`` in order."""
    transport = MagicMock(spec=_TRANSPORT_CLASS)
    transport.is_active.return_value = active
    transport.is_authenticated.return_value = True
    transport.open_session.side_effect = list(channels)
    return transport


def su_channel(*command_replies, password_prompt=b"Password: ", root_prompt=b"\r\nroot@host:~# "):
    """Channel that completes a ``su -`` login, then answers commands in order."""
    replies = [[password_prompt], [root_prompt]]
    replies.extend(command_replies)
    return FakeChannel(replies=replies)
