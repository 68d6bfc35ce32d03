"""Tests for the virtual filesystem."""

import pytest

from sshmon.filesystem import (
    DIR,
    FILE,
    FsNode,
    NotADirectory,
    NotAFile,
    PathExists,
    PathNotFound,
    VirtualFilesystem,
    build_tree,
    home_for,
    normalize_path,
)
from sshmon.profiles import PROFILES


class TestNormalizePath:
    """Tests for path normalization."""

    @pytest.mark.parametrize(
        "path,cwd,expected",
        [
            ("/etc/passwd", "/root", "/etc/passwd"),
            ("test.txt", "/root", "/root/test.txt"),
            ("..", "/root", "/"),
            ("../../..", "/home/pi", "/"),
            ("/tmp//x/./y/", "/", "/tmp/x/y"),
            ("", "/var/log", "/var/log"),
            (".", "/var/log", "/var/log"),
            ("a/../b", "/tmp", "/tmp/b"),
        ],
    )
    def test_resolution(self, path, cwd, expected):
        assert normalize_path(path, cwd) == expected

    def test_home_expansion(self):
        """A leading ~ expands to the home directory."""
        assert normalize_path("~", "/tmp", "/home/pi") == "/home/pi"
        assert normalize_path("~/Documents", "/tmp", "/home/pi") == "/home/pi/Documents"

    def test_result_is_absolute_without_trailing_slash(self):
        for path in ("x/", "/usr/bin/", "../..", "~/a/"):
            result = normalize_path(path, "/var/log")
            assert result.startswith("/")
            assert result == "/" or not result.endswith("/")

    def test_idempotent(self):
        for path in ("../etc//hosts", "~/x/../y", "./a/./b/"):
            once = normalize_path(path, "/home/pi")
            assert normalize_path(once, "/somewhere/else") == once


class TestFsNode:
    """Tests for node metadata rendering."""

    def test_format_mode_string_file(self):
        assert FsNode(path="/f", kind=FILE, mode=0o644).format_mode_string() == "-rw-r--r--"

    def test_format_mode_string_dir(self):
        assert FsNode(path="/d", kind=DIR, mode=0o755).format_mode_string() == "drwxr-xr-x"

    def test_format_mode_string_sticky(self):
        assert FsNode(path="/tmp", kind=DIR, mode=0o1777).format_mode_string() == "drwxrwxrwt"

    def test_generator_runs_on_each_read(self):
        calls = []

        def gen():
            calls.append(1)
            return "value\n"

        node = FsNode(path="/proc/x", kind=FILE, generator=gen)
        assert node.read() == "value\n"
        node.read()
        assert len(calls) == 2


class TestStaticTree:
    """Tests for the shared per-persona tree."""

    def test_tree_built_once_per_persona(self):
        pi = PROFILES["raspberry-pi"]
        assert build_tree(pi) is build_tree(pi)

    def test_identity_files_match_persona(self, pi):
        fs = VirtualFilesystem(pi)
        assert fs.read("/etc/hostname") == "raspberrypi\n"
        assert "Raspbian" in fs.read("/etc/os-release")
        assert pi.mac_address in fs.read("/sys/class/net/eth0/address")

    def test_arm_has_device_tree_and_no_dmi(self, pi):
        fs = VirtualFilesystem(pi)
        assert fs.read("/proc/device-tree/model") == pi.model
        assert not fs.exists("/sys/class/dmi/id/sys_vendor")
        assert not fs.exists("/usr/bin/lspci")

    def test_x86_has_dmi_and_pci_tools(self, ubuntu):
        fs = VirtualFilesystem(ubuntu)
        assert fs.read("/sys/class/dmi/id/sys_vendor") == "Dell Inc.\n"
        assert fs.exists("/usr/bin/lspci")
        assert fs.exists("/usr/sbin/dmidecode")

    def test_cpuinfo_is_consistent_with_persona(self, pi, ubuntu):
        assert VirtualFilesystem(pi).read("/proc/cpuinfo").count("processor\t:") == pi.cpu_cores
        assert ubuntu.cpu_model in VirtualFilesystem(ubuntu).read("/proc/cpuinfo")

    def test_directory_modes(self, pi):
        fs = VirtualFilesystem(pi)
        assert fs.get("/tmp").mode == 0o1777
        assert fs.get("/root").mode == 0o700


class TestHomeFor:
    """Tests for login home resolution."""

    def test_root_home(self, pi):
        assert home_for(pi, "root") == "/root"

    def test_existing_user_home(self, pi):
        assert home_for(pi, "pi") == "/home/pi"

    def test_unknown_user_falls_back_to_root(self, pi):
        assert home_for(pi, "hacker") == "/root"


class TestVirtualFilesystem:
    """Tests for the per-session view."""

    def test_initial_cwd_is_home(self, pi):
        fs = VirtualFilesystem(pi, home="/home/pi")
        assert fs.cwd == "/home/pi"

    def test_get_missing_raises(self, filesystem):
        with pytest.raises(PathNotFound):
            filesystem.get("/no/such/thing")

    def test_list_missing_raises(self, filesystem):
        with pytest.raises(PathNotFound):
            filesystem.list("/nope")

    def test_list_file_raises(self, filesystem):
        with pytest.raises(NotADirectory):
            filesystem.list("/etc/passwd")

    def test_read_directory_raises(self, filesystem):
        with pytest.raises(NotAFile):
            filesystem.read("/etc")

    def test_change_directory(self, filesystem):
        assert filesystem.change_directory("/var/log") == "/var/log"
        assert filesystem.cwd == "/var/log"
        assert filesystem.change_directory("..") == "/var"

    def test_change_directory_errors_leave_cwd(self, filesystem):
        before = filesystem.cwd
        with pytest.raises(PathNotFound):
            filesystem.change_directory("/missing")
        with pytest.raises(NotADirectory):
            filesystem.change_directory("/etc/passwd")
        assert filesystem.cwd == before

    def test_write_then_read(self, filesystem):
        filesystem.write_file("/tmp/note.txt", "hello\n")
        assert filesystem.read("/tmp/note.txt") == "hello\n"
        assert "note.txt" in filesystem.list("/tmp")

    def test_append(self, filesystem):
        filesystem.write_file("/tmp/a", "one\n")
        filesystem.write_file("/tmp/a", "two\n", append=True)
        assert filesystem.read("/tmp/a") == "one\ntwo\n"

    def test_write_without_parent_fails(self, filesystem):
        with pytest.raises(PathNotFound):
            filesystem.write_file("/nope/file", "x")

    def test_make_directory(self, filesystem):
        filesystem.make_directory("/tmp/work")
        assert filesystem.get("/tmp/work").is_dir
        with pytest.raises(PathExists):
            filesystem.make_directory("/tmp/work")

    def test_remove_static_file(self, filesystem):
        filesystem.remove("/etc/crontab")
        assert not filesystem.exists("/etc/crontab")
        assert "crontab" not in filesystem.list("/etc")

    def test_remove_directory_needs_recursive(self, filesystem):
        with pytest.raises(NotAFile):
            filesystem.remove("/var/log")
        filesystem.remove("/var/log", recursive=True)
        assert not filesystem.exists("/var/log/syslog")

    def test_overlay_is_private_to_session(self, pi):
        first = VirtualFilesystem(pi)
        second = VirtualFilesystem(pi)
        first.write_file("/tmp/mine", "x")
        first.remove("/etc/hosts")
        assert not second.exists("/tmp/mine")
        assert second.exists("/etc/hosts")
        assert "/tmp/mine" not in build_tree(pi)

    def test_discard_drops_overlay(self, filesystem):
        filesystem.write_file("/tmp/x", "1")
        filesystem.remove("/etc/hosts")
        filesystem.discard()
        assert not filesystem.exists("/tmp/x")
        assert filesystem.exists("/etc/hosts")

    def test_chmod(self, filesystem):
        filesystem.write_file("/tmp/run.sh", "#!/bin/sh\n")
        filesystem.chmod("/tmp/run.sh", 0o755)
        assert filesystem.get("/tmp/run.sh").format_mode_string() == "-rwxr-xr-x"

    def test_walk_includes_start(self, filesystem):
        paths = [path for path, _ in filesystem.walk("/etc/ssh")]
        assert paths == ["/etc/ssh", "/etc/ssh/sshd_config"]
