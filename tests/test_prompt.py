"""Tests for ssh_mcp.prompt - su login and root prompt detection."""

import pytest

from ssh_mcp.prompt import LoginState, ShellPromptScanner, SuLoginScanner

SU_TRANSCRIPT = "su -\r\nPassword: "
ROOT_PROMPT = "\r\nroot@box:~# "


def feed_in_pieces(scanner, text, size):
    states = []
    for start in range(0, len(text), size):
        states.append(scanner.feed(text[start:start + size]))
    return states


class TestSuLoginScanner:
    def test_password_prompt(self):
        scanner = SuLoginScanner()
        assert scanner.feed(SU_TRANSCRIPT) is LoginState.SEND_PASSWORD
        assert scanner.password_sent
        assert scanner.buffer == ""

    def test_password_prompt_case_insensitive(self):
        assert SuLoginScanner().feed("PASSWORD:") is LoginState.SEND_PASSWORD

    def test_root_prompt_after_password(self):
        scanner = SuLoginScanner()
        scanner.feed(SU_TRANSCRIPT)
        assert scanner.feed(ROOT_PROMPT) is LoginState.ELEVATED

    def test_hash_before_password_is_not_elevation(self):
        scanner = SuLoginScanner()
        assert scanner.feed("# motd banner\r\n") is LoginState.PENDING

    def test_password_prompt_sent_once(self):
        scanner = SuLoginScanner()
        scanner.feed(SU_TRANSCRIPT)
        assert scanner.feed("\r\nPassword: ") is LoginState.PENDING

    @pytest.mark.parametrize(
        "failure",
        ["su: Authentication failure", "Incorrect password", "su: failed to execute", "su: authentication token"],
    )
    def test_failure_markers(self, failure):
        scanner = SuLoginScanner()
        scanner.feed(SU_TRANSCRIPT)
        assert scanner.feed(f"\r\n{failure}\r\n$ ") is LoginState.FAILED

    @pytest.mark.parametrize("size", [1, 2, 3, 7])
    def test_detection_independent_of_chunking(self, size):
        scanner = SuLoginScanner()
        states = feed_in_pieces(scanner, SU_TRANSCRIPT, size)
        assert states.count(LoginState.SEND_PASSWORD) == 1
        assert feed_in_pieces(scanner, ROOT_PROMPT, size)[-1] is LoginState.ELEVATED


class TestShellPromptScanner:
    def test_extracts_middle_lines(self):
        scanner = ShellPromptScanner()
        assert scanner.feed("whoami\r\nroot\r\nroot@box:~# ")
        assert scanner.output() == "root"

    def test_multi_line_output(self):
        scanner = ShellPromptScanner()
        scanner.feed("ls\r\na\r\nb\r\nc\r\nroot@box:~# ")
        assert scanner.output() == "a\nb\nc"

    def test_no_output(self):
        scanner = ShellPromptScanner()
        scanner.feed("true\r\nroot@box:~# ")
        assert scanner.output() == ""

    def test_waits_for_prompt(self):
        scanner = ShellPromptScanner()
        assert not scanner.feed("sleep 1\r\n")
        assert scanner.feed("root@box:~# ")

    @pytest.mark.parametrize("size", [1, 4, 9])
    def test_chunking_does_not_change_output(self, size):
        scanner = ShellPromptScanner()
        text = "id\r\nuid=0(root) gid=0(root)\r\nroot@box:~# "
        assert feed_in_pieces(scanner, text, size)[-1]
        assert scanner.output() == "uid=0(root) gid=0(root)"
