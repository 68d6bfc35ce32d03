"""Virtual filesystem for sshmon sessions.

The static tree of directories and files is generated once per persona and
shared read-only by every session. Each session gets its own
``VirtualFilesystem`` view holding a private working directory and a small
overlay for files the attacker creates (downloads, ``touch``, ``echo >``).
Nothing written to the overlay outlives the session.

File nodes hold either fixed text or a generator that is called on every
read, so time-dependent files like ``/proc/uptime`` are never stale.
"""

from __future__ import annotations

import functools
import ipaddress
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from .profiles import Persona

SEP = "/"
HOME_ROOT = "/root"

DIR = "dir"
FILE = "file"

# Fixed fake boot time so /proc/uptime grows realistically while we run.
_BOOT_TIME = time.time() - (3 * 86400 + 4 * 3600 + 17 * 60)

_ELF_STUB = "\x7fELF\x01\x01\x01"


# ---------- Errors ----------


class FilesystemError(Exception):
    """Base class for virtual filesystem errors.

    ``path`` is the path exactly as the caller supplied it, so shell error
    messages can echo what the attacker typed.
    """

    def __init__(self, path: str) -> None:
        super().__init__(path)
        self.path = path


class PathNotFound(FilesystemError):
    pass


class NotADirectory(FilesystemError):
    pass


class NotAFile(FilesystemError):
    pass


class PathExists(FilesystemError):
    pass


class ProtectedPath(FilesystemError):
    """The operation would destroy the root of the tree."""


# ---------- Path handling ----------


def normalize_path(path: str, cwd: str = SEP, home: str = HOME_ROOT) -> str:
    """Resolve ``path`` against ``cwd`` into a canonical absolute path.

    - a leading ``~`` expands to ``home``
    - relative paths are prefixed with ``cwd``
    - empty and ``.`` segments are dropped
    - ``..`` pops one segment and clamps at the root instead of failing

    The result never has a trailing separator (except the root itself) and
    normalizing an already-normalized path returns it unchanged.
    """
    if not path:
        path = cwd
    if path == "~" or path.startswith("~/"):
        path = home + path[1:]
    if not path.startswith(SEP):
        path = cwd + SEP + path

    resolved: List[str] = []
    for part in path.split(SEP):
        if part in ("", "."):
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        resolved.append(part)
    return SEP + SEP.join(resolved)


def parent_of(path: str) -> str:
    if path == SEP:
        return SEP
    head = path.rsplit(SEP, 1)[0]
    return head or SEP


def basename(path: str) -> str:
    if path == SEP:
        return SEP
    return path.rsplit(SEP, 1)[-1]


# ---------- Nodes ----------


@dataclass(frozen=True)
class FsNode:
    """A directory or file in the virtual tree."""

    path: str
    kind: str
    children: Tuple[str, ...] = ()
    content: Optional[str] = None
    generator: Optional[Callable[[], str]] = None
    mode: int = 0o644
    owner: str = "root"
    group: str = "root"
    mtime: float = 0.0

    @property
    def is_dir(self) -> bool:
        return self.kind == DIR

    @property
    def name(self) -> str:
        return basename(self.path)

    def read(self) -> str:
        """Return file content, running the generator fresh if there is one."""
        if self.generator is not None:
            return self.generator()
        return self.content or ""

    @property
    def size(self) -> int:
        if self.is_dir:
            return 4096
        return len(self.read().encode("utf-8", errors="replace"))

    def format_mode_string(self) -> str:
        """Render the mode the way ``ls -l`` does (e.g. ``drwxr-xr-x``)."""
        chars = ["d" if self.is_dir else "-"]
        for shift in (6, 3, 0):
            bits = (self.mode >> shift) & 0o7
            chars.append("r" if bits & 4 else "-")
            chars.append("w" if bits & 2 else "-")
            chars.append("x" if bits & 1 else "-")
        if self.mode & 0o1000:
            chars[9] = "t" if chars[9] == "x" else "T"
        return "".join(chars)


class _TreeBuilder:
    """Collects nodes in insertion order and freezes them into a tree."""

    def __init__(self, mtime: float) -> None:
        self._mtime = mtime
        self._dirs: Dict[str, Tuple[int, str, str]] = {}
        self._files: Dict[str, Tuple[Optional[str], Optional[Callable[[], str]], int, str, str]] = {}
        self._order: List[str] = []
        self.add_dir(SEP)

    def add_dir(self, path: str, mode: int = 0o755, owner: str = "root", group: Optional[str] = None) -> None:
        if path != SEP:
            parent = parent_of(path)
            if parent not in self._dirs:
                self.add_dir(parent)
        if path not in self._dirs:
            self._order.append(path)
        self._dirs[path] = (mode, owner, group or owner)

    def add_file(
        self,
        path: str,
        content: "str | Callable[[], str]" = "",
        mode: int = 0o644,
        owner: str = "root",
        group: Optional[str] = None,
    ) -> None:
        parent = parent_of(path)
        if parent not in self._dirs:
            self.add_dir(parent)
        if path not in self._files:
            self._order.append(path)
        if callable(content):
            self._files[path] = (None, content, mode, owner, group or owner)
        else:
            self._files[path] = (content, None, mode, owner, group or owner)

    def build(self) -> Mapping[str, FsNode]:
        children: Dict[str, List[str]] = {d: [] for d in self._dirs}
        for path in self._order:
            if path != SEP:
                children[parent_of(path)].append(basename(path))

        nodes: Dict[str, FsNode] = {}
        for path in self._order:
            if path in self._dirs:
                mode, owner, group = self._dirs[path]
                nodes[path] = FsNode(
                    path=path,
                    kind=DIR,
                    children=tuple(children[path]),
                    mode=mode,
                    owner=owner,
                    group=group,
                    mtime=self._mtime,
                )
            else:
                content, generator, mode, owner, group = self._files[path]
                nodes[path] = FsNode(
                    path=path,
                    kind=FILE,
                    content=content,
                    generator=generator,
                    mode=mode,
                    owner=owner,
                    group=group,
                    mtime=self._mtime,
                )
        return MappingProxyType(nodes)


# ---------- Content generators ----------


def _passwd(persona: Persona) -> str:
    user = persona.home_user
    return f"""root:x:0:0:root:/root:/bin/bash
daemon:x:1:1:daemon:/usr/sbin:/usr/sbin/nologin
bin:x:2:2:bin:/bin:/usr/sbin/nologin
sys:x:3:3:sys:/dev:/usr/sbin/nologin
sync:x:4:65534:sync:/bin:/bin/sync
games:x:5:60:games:/usr/games:/usr/sbin/nologin
man:x:6:12:man:/var/cache/man:/usr/sbin/nologin
lp:x:7:7:lp:/var/spool/lpd:/usr/sbin/nologin
mail:x:8:8:mail:/var/mail:/usr/sbin/nologin
news:x:9:9:news:/var/spool/news:/usr/sbin/nologin
www-data:x:33:33:www-data:/var/www:/usr/sbin/nologin
nobody:x:65534:65534:nobody:/nonexistent:/usr/sbin/nologin
systemd-timesync:x:100:102:systemd Time Synchronization,,,:/run/systemd:/usr/sbin/nologin
messagebus:x:103:106::/nonexistent:/usr/sbin/nologin
sshd:x:109:65534::/run/sshd:/usr/sbin/nologin
{user}:x:1000:1000:,,,:/home/{user}:/bin/bash
"""


def _shadow(persona: Persona) -> str:
    user = persona.home_user
    return f"""root:$6$Tm3kQ9xv$0vJ2yq4ZUyc6mNqB1tWfQe7r8Kp5Yx2hD3sLz9aGvR1uCnE6iO4jH7bM0wT5kX8dF2gP9lS3vA6nY1qZ4cU7e.:18921:0:99999:7:::
daemon:*:18921:0:99999:7:::
bin:*:18921:0:99999:7:::
sys:*:18921:0:99999:7:::
sync:*:18921:0:99999:7:::
games:*:18921:0:99999:7:::
man:*:18921:0:99999:7:::
lp:*:18921:0:99999:7:::
mail:*:18921:0:99999:7:::
news:*:18921:0:99999:7:::
www-data:*:18921:0:99999:7:::
nobody:*:18921:0:99999:7:::
sshd:*:18921:0:99999:7:::
{user}:$6$Wb8rLp2N$H4kR9sV1xQ7mZ3cT6yE0uJ5nB8gD2fA1wL4pK7oI9vS3hM6tY0rC5eX8qN2jU1bF4zG7aP3lW6dO9sK2mV5i/:18921:0:99999:7:::
"""


def _group(persona: Persona) -> str:
    user = persona.home_user
    return f"""root:x:0:
daemon:x:1:
bin:x:2:
sys:x:3:
adm:x:4:syslog,{user}
tty:x:5:
disk:x:6:
lp:x:7:
mail:x:8:
news:x:9:
sudo:x:27:{user}
www-data:x:33:
shadow:x:42:
users:x:100:
nogroup:x:65534:
{user}:x:1000:
"""


def _hosts(persona: Persona) -> str:
    return f"""127.0.0.1       localhost
::1             localhost ip6-localhost ip6-loopback
ff02::1         ip6-allnodes
ff02::2         ip6-allrouters

127.0.1.1       {persona.hostname}
"""


def gateway_for(persona: Persona) -> str:
    network = ipaddress.ip_network(f"{persona.ip_address}/24", strict=False)
    return str(network.network_address + 1)


def _resolv_conf(persona: Persona) -> str:
    return f"nameserver {gateway_for(persona)}\nnameserver 8.8.8.8\n"


def _bashrc(persona: Persona) -> str:
    return (
        "# ~/.bashrc: executed by bash(1) for non-login shells.\n"
        "\n"
        "# If not running interactively, don't do anything\n"
        "case $- in\n"
        "    *i*) ;;\n"
        "      *) return;;\n"
        "esac\n"
        "\n"
        "HISTCONTROL=ignoreboth\n"
        "HISTSIZE=1000\n"
        "HISTFILESIZE=2000\n"
        "\n"
        "PS1='${debian_chroot:+($debian_chroot)}\\u@" + persona.hostname + ":\\w\\$ '\n"
        "\n"
        "alias ll='ls -alF'\n"
        "alias la='ls -A'\n"
        "alias l='ls -CF'\n"
    )


_PROFILE = """# ~/.profile: executed by the command interpreter for login shells.

if [ -n "$BASH_VERSION" ]; then
    if [ -f "$HOME/.bashrc" ]; then
        . "$HOME/.bashrc"
    fi
fi

if [ -d "$HOME/bin" ] ; then
    PATH="$HOME/bin:$PATH"
fi
"""

_BASH_HISTORY = """apt update
apt upgrade -y
df -h
free -m
systemctl status ssh
tail -n 50 /var/log/syslog
ip addr
crontab -l
cat /etc/os-release
reboot
"""

_SSHD_CONFIG = """Include /etc/ssh/sshd_config.d/*.conf

Port 22
PermitRootLogin yes
PasswordAuthentication yes
ChallengeResponseAuthentication no
UsePAM yes
X11Forwarding yes
PrintMotd no
AcceptEnv LANG LC_*
Subsystem       sftp    /usr/lib/openssh/sftp-server
"""

_CRONTAB = """# /etc/crontab: system-wide crontab
SHELL=/bin/sh
PATH=/usr/local/sbin:/usr/local/bin:/sbin:/bin:/usr/sbin:/usr/bin

17 *    * * *   root    cd / && run-parts --report /etc/cron.hourly
25 6    * * *   root    test -x /usr/sbin/anacron || ( cd / && run-parts --report /etc/cron.daily )
47 6    * * 7   root    test -x /usr/sbin/anacron || ( cd / && run-parts --report /etc/cron.weekly )
52 6    1 * *   root    test -x /usr/sbin/anacron || ( cd / && run-parts --report /etc/cron.monthly )
"""


def _fstab(persona: Persona) -> str:
    lines = ["# <file system> <mount point>   <type>  <options>       <dump>  <pass>", "proc            /proc           proc    defaults          0       0"]
    if persona.boot_device:
        lines.append(f"{persona.boot_device}  /boot           vfat    defaults          0       2")
    lines.append(f"{persona.root_device}       /               ext4    defaults,noatime  0       1")
    return "\n".join(lines) + "\n"


def _cpuinfo(persona: Persona) -> str:
    blocks = []
    if persona.has_pci_bus:
        for core in range(persona.cpu_cores):
            blocks.append(
                f"""processor\t: {core}
vendor_id\t: GenuineIntel
cpu family\t: 6
model\t\t: 158
model name\t: {persona.cpu_model}
stepping\t: 10
microcode\t: 0xf0
cpu MHz\t\t: 3000.000
cache size\t: 9216 KB
physical id\t: 0
siblings\t: {persona.cpu_cores}
core id\t\t: {core}
cpu cores\t: {persona.cpu_cores}
fpu\t\t: yes
flags\t\t: fpu vme de pse tsc msr pae mce cx8 apic sep mtrr pge mca cmov pat pse36 clflush dts acpi mmx fxsr sse sse2 ss ht tm pbe syscall nx pdpe1gb rdtscp lm constant_tsc art arch_perfmon pebs bts rep_good nopl xtopology nonstop_tsc cpuid aperfmperf pni pclmulqdq dtes64 monitor ds_cpl vmx smx est tm2 ssse3 sdbg fma cx16 xtpr pdcm pcid sse4_1 sse4_2 x2apic movbe popcnt aes xsave avx f16c rdrand lahf_lm abm 3dnowprefetch cpuid_fault epb invpcid_single pti ssbd ibrs ibpb stibp tpr_shadow vnmi flexpriority ept vpid ept_ad fsgsbase tsc_adjust bmi1 avx2 smep bmi2 erms invpcid mpx rdseed adx smap clflushopt intel_pt xsaveopt xsavec xgetbv1 xsaves dtherm ida arat pln pts hwp hwp_notify hwp_act_window hwp_epp md_clear flush_l1d
bogomips\t: 6000.00
clflush size\t: 64
address sizes\t: 39 bits physical, 48 bits virtual
"""
            )
        return "\n".join(blocks)

    if persona.architecture == "mips":
        for core in range(persona.cpu_cores):
            blocks.append(
                f"""processor\t\t: {core}
cpu model\t\t: {persona.cpu_model}
BogoMIPS\t\t: 586.13
wait instruction\t: yes
microsecond timers\t: yes
tlb_entries\t\t: 32
isa\t\t\t: mips1 mips2 mips32r1 mips32r2
ASEs implemented\t: mips16 dsp mt
"""
            )
        return f"system type\t\t: {persona.hardware} ver:1 eco:3\nmachine\t\t\t: {persona.model}\n" + "\n".join(blocks)

    for core in range(persona.cpu_cores):
        blocks.append(
            f"""processor\t: {core}
model name\t: {persona.cpu_model}
BogoMIPS\t: 38.40
Features\t: half thumb fastmult vfp edsp neon vfpv3 tls vfpv4 idiva idivt vfpd32 lpae evtstrm crc32
CPU implementer\t: 0x41
CPU architecture: 7
CPU variant\t: 0x0
CPU part\t: 0xd03
CPU revision\t: 4
"""
        )
    return "\n".join(blocks) + f"""
Hardware\t: {persona.hardware}
Revision\t: a02082
Serial\t\t: 00000000a1b2c3d4
Model\t\t: {persona.model}
"""


def _meminfo(persona: Persona) -> str:
    total = persona.mem_total_kb
    free = int(total * 0.58)
    available = int(total * 0.77)
    buffers = int(total * 0.038)
    cached = int(total * 0.2)
    return (
        f"MemTotal:       {total:>10} kB\n"
        f"MemFree:        {free:>10} kB\n"
        f"MemAvailable:   {available:>10} kB\n"
        f"Buffers:        {buffers:>10} kB\n"
        f"Cached:         {cached:>10} kB\n"
        f"SwapCached:     {0:>10} kB\n"
        f"Active:         {int(total * 0.22):>10} kB\n"
        f"Inactive:       {int(total * 0.12):>10} kB\n"
        f"SwapTotal:      {persona.swap_total_kb:>10} kB\n"
        f"SwapFree:       {persona.swap_total_kb:>10} kB\n"
    )


def _proc_version(persona: Persona) -> str:
    return f"Linux version {persona.kernel_release} (gcc version 10.2.1 20210110) {persona.kernel_version}\n"


def _proc_uptime() -> str:
    up = time.time() - _BOOT_TIME
    idle = up * 3.7
    return f"{up:.2f} {idle:.2f}\n"


def _proc_loadavg() -> str:
    rnd = random.Random(int(time.time() // 60))
    return f"{rnd.uniform(0, 0.5):.2f} {rnd.uniform(0, 0.3):.2f} {rnd.uniform(0, 0.2):.2f} 1/{rnd.randint(90, 140)} {rnd.randint(1800, 2400)}\n"


def _auth_log(persona: Persona) -> str:
    """Generate recent auth.log entries, regenerated on every read."""
    lines = []
    base_time = datetime.now() - timedelta(days=2)
    ips = ["192.168.1.10", "192.168.1.23"]
    for _ in range(24):
        ts = base_time + timedelta(minutes=random.randint(0, 2880))
        ts_str = ts.strftime("%b %d %H:%M:%S")
        pid = random.randint(1000, 9999)
        if random.random() < 0.6:
            user = random.choice(["root", persona.home_user])
            lines.append(
                f"{ts_str} {persona.hostname} sshd[{pid}]: Accepted password for {user} "
                f"from {random.choice(ips)} port {random.randint(40000, 60000)} ssh2"
            )
        else:
            bogus = random.choice(["admin", "test", "guest", "oracle", "postgres"])
            addr = ".".join(str(random.randint(1, 254)) for _ in range(4))
            lines.append(
                f"{ts_str} {persona.hostname} sshd[{pid}]: Failed password for invalid user {bogus} "
                f"from {addr} port {random.randint(40000, 60000)} ssh2"
            )
    lines.sort()
    return "\n".join(lines) + "\n"


def _syslog(persona: Persona) -> str:
    lines = []
    base_time = datetime.now() - timedelta(hours=12)
    messages = [
        ("systemd[1]", "Started Session {} of user root."),
        ("systemd[1]", "Starting Daily apt download activities..."),
        ("systemd[1]", "Finished Daily apt download activities."),
        ("CRON[{}]", "(root) CMD (   cd / && run-parts --report /etc/cron.hourly)"),
        ("systemd-timesyncd[412]", "Initial synchronization to time server 185.125.190.57:123 (ntp.ubuntu.com)."),
        ("rsyslogd", "[origin software=\"rsyslogd\"] rsyslogd was HUPed"),
    ]
    for _ in range(20):
        ts = base_time + timedelta(minutes=random.randint(0, 720))
        source, template = random.choice(messages)
        source = source.format(random.randint(1000, 9999))
        message = template.format(random.randint(1, 90)) if "{}" in template else template
        lines.append(f"{ts.strftime('%b %d %H:%M:%S')} {persona.hostname} {source}: {message}")
    lines.sort()
    return "\n".join(lines) + "\n"


# Programs present on every persona, by directory.
_COMMON_BIN = (
    "bash", "cat", "chmod", "date", "df", "dmesg", "echo", "grep", "hostname",
    "ls", "mkdir", "ping", "ps", "pwd", "rm", "sh", "sleep", "touch", "uname",
)
_COMMON_USR_BIN = (
    "clear", "curl", "env", "find", "free", "id", "lscpu", "nproc", "printenv",
    "sudo", "systemd-detect-virt", "top", "uptime", "w", "wget", "whoami", "which",
)
_COMMON_SBIN = ("ifconfig", "ip", "ss")
_COMMON_USR_SBIN = ("netstat", "sshd")


def _populate(builder: _TreeBuilder, persona: Persona) -> None:
    p = functools.partial
    user = persona.home_user
    home = f"/home/{user}"

    for top in ("bin", "boot", "dev", "etc", "home", "lib", "media", "mnt", "opt",
                "proc", "root", "run", "sbin", "srv", "sys", "tmp", "usr", "var"):
        mode = {"root": 0o700, "tmp": 0o1777, "proc": 0o555, "sys": 0o555}.get(top, 0o755)
        builder.add_dir(SEP + top, mode=mode)

    # /etc
    builder.add_file("/etc/passwd", p(_passwd, persona))
    builder.add_file("/etc/shadow", p(_shadow, persona), mode=0o640, group="shadow")
    builder.add_file("/etc/group", p(_group, persona))
    builder.add_file("/etc/hosts", p(_hosts, persona))
    builder.add_file("/etc/hostname", f"{persona.hostname}\n")
    builder.add_file("/etc/os-release", persona.os_release)
    builder.add_file("/etc/issue", f"{persona.os_pretty_name} \\n \\l\n\n")
    builder.add_file("/etc/resolv.conf", p(_resolv_conf, persona))
    builder.add_file("/etc/fstab", p(_fstab, persona))
    builder.add_file("/etc/crontab", _CRONTAB)
    builder.add_file("/etc/ssh/sshd_config", _SSHD_CONFIG)
    builder.add_dir("/etc/network")
    builder.add_dir("/etc/cron.d")

    # Home directories
    builder.add_file("/root/.bashrc", p(_bashrc, persona))
    builder.add_file("/root/.profile", _PROFILE)
    builder.add_file("/root/.bash_history", _BASH_HISTORY, mode=0o600)
    builder.add_dir("/root/.ssh", mode=0o700)
    builder.add_file("/root/.ssh/authorized_keys", "# Authorized SSH keys\n", mode=0o600)
    builder.add_dir(home, owner=user)
    builder.add_file(f"{home}/.bashrc", p(_bashrc, persona), owner=user)
    builder.add_file(f"{home}/.profile", _PROFILE, owner=user)
    builder.add_dir(f"{home}/Documents", owner=user)
    builder.add_dir(f"{home}/Downloads", owner=user)

    # /var
    builder.add_dir("/var/log")
    builder.add_file("/var/log/syslog", p(_syslog, persona), mode=0o640, group="adm")
    builder.add_file("/var/log/auth.log", p(_auth_log, persona), mode=0o640, group="adm")
    builder.add_dir("/var/www", owner="www-data")
    builder.add_dir("/var/tmp", mode=0o1777)
    builder.add_dir("/var/lib")

    # /proc
    builder.add_file("/proc/cpuinfo", p(_cpuinfo, persona), mode=0o444)
    builder.add_file("/proc/meminfo", p(_meminfo, persona), mode=0o444)
    builder.add_file("/proc/version", p(_proc_version, persona), mode=0o444)
    builder.add_file("/proc/uptime", _proc_uptime, mode=0o444)
    builder.add_file("/proc/loadavg", _proc_loadavg, mode=0o444)
    if persona.architecture.startswith("arm"):
        builder.add_file("/proc/device-tree/model", persona.model, mode=0o444)

    # /sys
    builder.add_file("/sys/class/net/eth0/address", f"{persona.mac_address}\n", mode=0o444)
    builder.add_file("/sys/class/net/lo/address", "00:00:00:00:00:00\n", mode=0o444)
    if persona.has_pci_bus:
        builder.add_file("/sys/class/dmi/id/sys_vendor", f"{persona.vendor}\n", mode=0o444)
        builder.add_file("/sys/class/dmi/id/product_name", f"{persona.model}\n", mode=0o444)
        builder.add_file("/sys/class/dmi/id/bios_vendor", f"{persona.bios_vendor}\n", mode=0o444)

    # /dev
    for dev in ("null", "zero", "random", "urandom", "tty", "ptmx"):
        builder.add_file(f"/dev/{dev}", "", mode=0o666)

    # Program stubs; only what exists on this kind of device.
    usr_bin = list(_COMMON_USR_BIN)
    usr_sbin = list(_COMMON_USR_SBIN)
    if persona.has_pci_bus:
        usr_bin.append("lspci")
        usr_sbin.append("dmidecode")
    for directory, names in (
        ("/bin", _COMMON_BIN),
        ("/sbin", _COMMON_SBIN),
        ("/usr/bin", sorted(usr_bin)),
        ("/usr/sbin", sorted(usr_sbin)),
    ):
        for name in names:
            builder.add_file(f"{directory}/{name}", _ELF_STUB, mode=0o755)
    builder.add_dir("/usr/lib")
    builder.add_dir("/usr/local/bin")
    builder.add_dir("/usr/share")


@functools.lru_cache(maxsize=None)
def build_tree(persona: Persona) -> Mapping[str, FsNode]:
    """Build (once per persona) the shared, read-only static tree."""
    builder = _TreeBuilder(mtime=_BOOT_TIME - 86400 * 30)
    _populate(builder, persona)
    return builder.build()


def is_program(node: FsNode) -> bool:
    """True for the executable stubs under the bin directories."""
    return not node.is_dir and node.content == _ELF_STUB


def home_for(persona: Persona, username: str) -> str:
    """Home root for ``username``: /root for root, else /home/<user> if it exists."""
    if username == "root":
        return HOME_ROOT
    candidate = f"/home/{username}"
    if candidate in build_tree(persona):
        return candidate
    return HOME_ROOT


# ---------- Per-session view ----------


class VirtualFilesystem:
    """One session's view of the shared tree.

    Holds the session's working directory and a private overlay of created
    or removed paths. The shared tree itself is never modified.
    """

    def __init__(self, persona: Persona, home: str = HOME_ROOT, cwd: Optional[str] = None) -> None:
        self.persona = persona
        self.tree = build_tree(persona)
        self.home = home
        self.cwd = normalize_path(cwd or home)
        self._overlay: Dict[str, FsNode] = {}
        self._removed: Set[str] = set()

    def normalize(self, path: str) -> str:
        return normalize_path(path, self.cwd, self.home)

    def _is_removed(self, path: str) -> bool:
        for gone in self._removed:
            if path == gone or path.startswith(gone + SEP):
                return True
        return False

    def _lookup(self, abs_path: str) -> Optional[FsNode]:
        node = self._overlay.get(abs_path)
        if node is not None:
            return node
        if self._is_removed(abs_path):
            return None
        return self.tree.get(abs_path)

    def get(self, path: str) -> FsNode:
        node = self._lookup(self.normalize(path))
        if node is None:
            raise PathNotFound(path)
        return node

    def exists(self, path: str) -> bool:
        return self._lookup(self.normalize(path)) is not None

    def list(self, path: str = "") -> List[str]:
        """Ordered child names of a directory."""
        abs_path = self.normalize(path)
        node = self._lookup(abs_path)
        if node is None:
            raise PathNotFound(path)
        if not node.is_dir:
            raise NotADirectory(path)

        names = list(node.children)
        for extra in self._overlay:
            if parent_of(extra) == abs_path and extra != abs_path:
                name = basename(extra)
                if name not in names:
                    names.append(name)
        prefix = abs_path.rstrip(SEP) + SEP
        return [n for n in names if self._lookup(prefix + n) is not None]

    def read(self, path: str) -> str:
        node = self.get(path)
        if node.is_dir:
            raise NotAFile(path)
        return node.read()

    def change_directory(self, path: str) -> str:
        abs_path = self.normalize(path)
        node = self._lookup(abs_path)
        if node is None:
            raise PathNotFound(path)
        if not node.is_dir:
            raise NotADirectory(path)
        self.cwd = abs_path
        return abs_path

    # Overlay mutations. These only ever touch this session's view.

    def _require_parent_dir(self, path: str, abs_path: str) -> None:
        parent = self._lookup(parent_of(abs_path))
        if parent is None:
            raise PathNotFound(path)
        if not parent.is_dir:
            raise NotADirectory(path)

    def write_file(self, path: str, content: str, append: bool = False, mode: int = 0o644, owner: str = "root") -> str:
        abs_path = self.normalize(path)
        self._require_parent_dir(path, abs_path)
        existing = self._lookup(abs_path)
        if existing is not None and existing.is_dir:
            raise NotAFile(path)
        if append and existing is not None:
            content = existing.read() + content
        self._overlay[abs_path] = FsNode(
            path=abs_path, kind=FILE, content=content, mode=mode, owner=owner, group=owner, mtime=time.time()
        )
        self._removed.discard(abs_path)
        return abs_path

    def make_directory(self, path: str, owner: str = "root") -> str:
        abs_path = self.normalize(path)
        if self._lookup(abs_path) is not None:
            raise PathExists(path)
        self._require_parent_dir(path, abs_path)
        self._overlay[abs_path] = FsNode(
            path=abs_path, kind=DIR, mode=0o755, owner=owner, group=owner, mtime=time.time()
        )
        self._removed.discard(abs_path)
        return abs_path

    def remove(self, path: str, recursive: bool = False) -> str:
        abs_path = self.normalize(path)
        if abs_path == SEP:
            raise ProtectedPath(path)
        node = self._lookup(abs_path)
        if node is None:
            raise PathNotFound(path)
        if node.is_dir and not recursive:
            raise NotAFile(path)
        for key in [k for k in self._overlay if k == abs_path or k.startswith(abs_path + SEP)]:
            del self._overlay[key]
        if abs_path in self.tree:
            self._removed.add(abs_path)
        return abs_path

    def chmod(self, path: str, mode: int) -> None:
        abs_path = self.normalize(path)
        node = self._lookup(abs_path)
        if node is None:
            raise PathNotFound(path)
        self._overlay[abs_path] = FsNode(
            path=node.path,
            kind=node.kind,
            children=node.children,
            content=node.content,
            generator=node.generator,
            mode=mode,
            owner=node.owner,
            group=node.group,
            mtime=time.time(),
        )

    def walk(self, path: str = "") -> Iterator[Tuple[str, FsNode]]:
        """Depth-first (path, node) pairs under ``path``, including it."""
        abs_path = self.normalize(path)
        node = self._lookup(abs_path)
        if node is None:
            raise PathNotFound(path)
        yield abs_path, node
        if node.is_dir:
            prefix = abs_path.rstrip(SEP) + SEP
            for name in self.list(abs_path):
                yield from self.walk(prefix + name)

    def discard(self) -> None:
        """Drop the session overlay."""
        self._overlay.clear()
        self._removed.clear()
