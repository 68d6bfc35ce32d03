"""Tests for the terminal input decoder."""

from sshmon.tty_handler import ERASE, KeyResult, TTYHandler


def feed_all(tty, data):
    return list(tty.feed(data))


class TestLineEditing:
    """Tests for echo, submission and erase."""

    def test_printable_bytes_echo(self):
        tty = TTYHandler()
        results = feed_all(tty, b"ls")
        assert [r.output for r in results] == ["l", "s"]
        assert tty.buffer == "ls"

    def test_byte_by_byte_submits_once(self):
        tty = TTYHandler()
        commands = []
        for byte in b"ls\r":
            result = tty.process_byte(byte)
            if result.command is not None:
                commands.append(result.command)
        assert commands == ["ls"]
        assert tty.buffer == ""

    def test_submitted_line_is_trimmed(self):
        tty = TTYHandler()
        results = feed_all(tty, b"  whoami  \r")
        assert results[-1] == KeyResult(command="whoami", output="\r\n")

    def test_crlf_counts_as_one_enter(self):
        tty = TTYHandler()
        results = feed_all(tty, b"id\r\n")
        assert [r.command for r in results if r.command] == ["id"]
        assert sum(1 for r in results if r.output == "\r\n") == 1

    def test_bare_lf_submits(self):
        tty = TTYHandler()
        assert feed_all(tty, b"pwd\n")[-1].command == "pwd"

    def test_empty_enter_requests_prompt(self):
        tty = TTYHandler()
        result = tty.process_byte(0x0D)
        assert result.command is None
        assert result.needs_prompt
        assert result.output == "\r\n"

    def test_backspace_erases(self):
        tty = TTYHandler()
        feed_all(tty, b"lsx")
        assert tty.process_byte(0x7F).output == ERASE
        assert tty.process_byte(0x08).output == ERASE
        assert tty.buffer == "l"

    def test_backspace_on_empty_buffer_emits_nothing(self):
        tty = TTYHandler()
        assert tty.process_byte(0x7F) == KeyResult()
        assert feed_all(tty, b"\x7f\x7f") == []

    def test_tab_echoes_without_buffering(self):
        tty = TTYHandler()
        results = feed_all(tty, b"l\ts")
        assert results[1].output == "  "
        assert tty.buffer == "ls"

    def test_control_bytes_ignored(self):
        tty = TTYHandler()
        assert feed_all(tty, b"\x01\x02\x07") == []
        assert tty.buffer == ""


class TestControlKeys:
    """Tests for Ctrl-C and Ctrl-D."""

    def test_ctrl_c_clears_line(self):
        tty = TTYHandler()
        feed_all(tty, b"rm -rf /")
        result = tty.process_byte(0x03)
        assert result.output == "^C\r\n"
        assert result.needs_prompt
        assert result.command is None
        assert tty.buffer == ""

    def test_ctrl_d_logs_out(self):
        tty = TTYHandler()
        result = tty.process_byte(0x04)
        assert result.logout
        assert result.output == "logout\r\n"


class TestEscapeSequences:
    """Arrow and function keys are swallowed whole."""

    def test_arrow_keys_swallowed(self):
        tty = TTYHandler()
        assert feed_all(tty, b"\x1b[A\x1b[B\x1b[C\x1b[D") == []
        assert tty.buffer == ""

    def test_sequence_between_text(self):
        tty = TTYHandler()
        results = feed_all(tty, b"ca\x1b[Dt\r")
        assert results[-1].command == "cat"

    def test_long_sequence(self):
        tty = TTYHandler()
        feed_all(tty, b"\x1b[1;5Cx")
        assert tty.buffer == "x"

    def test_ss3_sequence(self):
        tty = TTYHandler()
        feed_all(tty, b"\x1bOPy")
        assert tty.buffer == "y"

    def test_reset(self):
        tty = TTYHandler()
        feed_all(tty, b"abc\x1b[")
        tty.reset()
        feed_all(tty, b"A")
        assert tty.buffer == "A"
