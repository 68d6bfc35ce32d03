"""Command handling logic for sshmon.

A submitted line is split into a ``CommandInvocation`` and looked up in a
fixed, read-only table of handler functions. Every handler has the same
shape, ``handler(invocation, ctx) -> str``, and keeps no state of its own:
everything that changes between commands (working directory, environment,
history) lives on the session and its filesystem view.

Handlers answer as a bare-metal device matching the active persona. In
particular the usual "am I in a VM" probes (``systemd-detect-virt``,
``dmidecode``, ``lspci``, ``dmesg``) never mention a hypervisor, and
``lspci``/``dmidecode`` do not exist at all on ARM and MIPS personas.

Responses are plain text using ``\\n`` line endings; the session layer
translates them for the terminal. ``exit`` and ``logout`` return
``EXIT_SENTINEL`` instead of text.
"""

from __future__ import annotations

import fnmatch
import ipaddress
import logging
import random
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from .filesystem import (
    FsNode,
    NotADirectory,
    NotAFile,
    PathExists,
    PathNotFound,
    ProtectedPath,
    VirtualFilesystem,
    basename,
    gateway_for,
    is_program,
)
from .profiles import Persona

if TYPE_CHECKING:
    from .session import Session

LOGGER = logging.getLogger(__name__)


class _ExitSentinel:
    __slots__ = ()

    def __repr__(self) -> str:
        return "EXIT_SENTINEL"


# Returned by exit/logout. Compared by identity, never printed.
EXIT_SENTINEL = _ExitSentinel()

Response = Union[str, _ExitSentinel]

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
SSH_PORT = 22

# Values shown by dmidecode on x86 personas.
_BIOS_VERSION = "1.20.0"
_BIOS_DATE = "06/01/2021"
_SYSTEM_SERIAL = "7XK2Q52"
_SYSTEM_UUID = "4c4c4544-0058-4b10-8032-b7c04f513532"
_BOARD_NAME = "0C96W1"


@dataclass(frozen=True)
class CommandInvocation:
    """One parsed command line.

    ``name`` is the command token as typed, ``command`` its lowercase form
    used for dispatch. ``tokens`` keeps every token after the name in its
    original order for handlers whose options take values.
    """

    raw: str
    name: str
    args: Tuple[str, ...] = ()
    flags: FrozenSet[str] = frozenset()
    tokens: Tuple[str, ...] = ()

    @property
    def command(self) -> str:
        return self.name.lower()


def parse_command(line: str) -> Optional[CommandInvocation]:
    """Split a line on whitespace into command, flags and positional args.

    There is no quoting support. Returns None for a blank line.
    """
    parts = line.split()
    if not parts:
        return None
    rest = tuple(parts[1:])
    return CommandInvocation(
        raw=line.strip(),
        name=parts[0],
        args=tuple(p for p in rest if not p.startswith("-")),
        flags=frozenset(p for p in rest if p.startswith("-")),
        tokens=rest,
    )


def split_command_line(line: str) -> List[Tuple[str, str]]:
    """Split a line on ``;``, ``&&``, ``||`` and ``|`` outside quotes.

    Returns ``(operator, segment)`` pairs in order, where ``operator`` is the
    separator in front of the segment ("" for the first). Empty segments are
    dropped.
    """
    pieces: List[Tuple[str, str]] = []
    operator = ""
    current: List[str] = []
    quote = None
    index = 0
    while index < len(line):
        char = line[index]
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
            index += 1
            continue
        if char in "'\"":
            quote = char
            current.append(char)
            index += 1
            continue
        pair = line[index:index + 2]
        if pair in ("&&", "||"):
            pieces.append((operator, "".join(current)))
            operator, current = pair, []
            index += 2
            continue
        if char in ";|":
            pieces.append((operator, "".join(current)))
            operator, current = char, []
            index += 1
            continue
        current.append(char)
        index += 1
    pieces.append((operator, "".join(current)))
    return [(op, segment.strip()) for op, segment in pieces if segment.strip()]


def _no_download(url: str, tool: str) -> None:
    return None


@dataclass
class ShellContext:
    """Everything a handler may consult for one command."""

    persona: Persona
    filesystem: VirtualFilesystem
    session: "Session"
    username: str
    rng: random.Random = field(default_factory=random.Random)
    report_download: Callable[[str, str], None] = _no_download
    # Output of the previous stage of a pipeline, if any.
    stdin: Optional[str] = None

    @property
    def env(self) -> Dict[str, str]:
        return self.session.env

    @property
    def is_root(self) -> bool:
        return self.username == "root"


Handler = Callable[[CommandInvocation, ShellContext], Response]


# ---------- Small helpers ----------


def command_not_found(name: str) -> str:
    return f"bash: {name}: command not found\n"


def _lines(lines: List[str]) -> str:
    return "\n".join(lines) + "\n" if lines else ""


def _short_letters(flags: FrozenSet[str]) -> str:
    """Letters of all single-dash flags, so ``-la`` and ``-l -a`` match."""
    letters = ""
    for flag in sorted(flags):
        if flag.startswith("-") and not flag.startswith("--"):
            letters += flag[1:]
    return letters


def _option_value(tokens: Tuple[str, ...], option: str) -> Optional[str]:
    """Value following ``option`` in tokens (``-O file``), or None."""
    for index, token in enumerate(tokens):
        if token == option and index + 1 < len(tokens):
            return tokens[index + 1]
    return None


def _can_read(node: FsNode, ctx: ShellContext) -> bool:
    if ctx.is_root:
        return True
    if node.owner == ctx.username:
        return bool(node.mode & 0o400)
    return bool(node.mode & 0o004)


def _can_enter(node: FsNode, ctx: ShellContext) -> bool:
    if ctx.is_root:
        return True
    if node.owner == ctx.username:
        return bool(node.mode & 0o100)
    return bool(node.mode & 0o001)


def _human_size(kb: int) -> str:
    """Human readable size the way df -h prints it (e.g. 4.2G)."""
    if kb <= 0:
        return "0"
    value = float(kb)
    units = "KMGTP"
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    if value < 10:
        return f"{value:.1f}{units[unit]}"
    return f"{value:.0f}{units[unit]}"


def _human_free(kb: int) -> str:
    """Human readable size the way free -h prints it (e.g. 927Mi)."""
    if kb <= 0:
        return "0B"
    return _human_size(kb) + "i"


def _link_local(mac: str) -> str:
    """EUI-64 derived IPv6 link-local address for a MAC."""
    octets = [int(part, 16) for part in mac.split(":")]
    octets[0] ^= 0x02
    eui = octets[:3] + [0xFF, 0xFE] + octets[3:]
    groups = [f"{(eui[i] << 8) | eui[i + 1]:x}" for i in range(0, 8, 2)]
    return str(ipaddress.IPv6Address("fe80::" + ":".join(groups)))


def _network(persona: Persona) -> ipaddress.IPv4Network:
    return ipaddress.ip_network(f"{persona.ip_address}/24", strict=False)


def _shell_pid(ctx: ShellContext) -> int:
    return 1800 + int(ctx.session.id.replace("-", "")[:4], 16) % 400


def _uptime_minutes(ctx: ShellContext) -> int:
    return ctx.rng.randint(90, 7 * 24 * 60)


def _load_average(ctx: ShellContext) -> Tuple[float, float, float]:
    rng = ctx.rng
    return (round(rng.uniform(0, 0.5), 2), round(rng.uniform(0, 0.3), 2), round(rng.uniform(0, 0.2), 2))


def _format_up(minutes: int) -> str:
    days, rem = divmod(minutes, 24 * 60)
    hours, mins = divmod(rem, 60)
    if days:
        label = "day" if days == 1 else "days"
        if hours:
            return f"up {days} {label}, {hours:2d}:{mins:02d}"
        return f"up {days} {label}, {mins} min"
    if hours:
        return f"up {hours:2d}:{mins:02d}"
    return f"up {mins} min"


# ---------- Identity & privilege ----------


def _handle_whoami(inv: CommandInvocation, ctx: ShellContext) -> str:
    return ctx.username + "\n"


def _handle_id(inv: CommandInvocation, ctx: ShellContext) -> str:
    user = ctx.username
    uid = 0 if ctx.is_root else 1000
    letters = _short_letters(inv.flags)
    if "u" in letters or "g" in letters:
        return (user if "n" in letters else str(uid)) + "\n"
    if ctx.is_root:
        return "uid=0(root) gid=0(root) groups=0(root)\n"
    return f"uid=1000({user}) gid=1000({user}) groups=1000({user}),4(adm),27(sudo)\n"


_SUDO_USAGE = """usage: sudo -h | -K | -k | -V
usage: sudo -v [-AknS] [-g group] [-h host] [-p prompt] [-u user]
usage: sudo -l [-AknS] [-g group] [-h host] [-p prompt] [-U user] [-u user] [command]
usage: sudo [-AbEHknPS] [-r role] [-t type] [-C num] [-g group] [-h host] [-p prompt] [-T timeout] [-u user] [VAR=value] [-i|-s] [<command>]
"""


def _handle_sudo(inv: CommandInvocation, ctx: ShellContext) -> Response:
    if not inv.tokens:
        return _SUDO_USAGE
    if "-l" in inv.flags or "--list" in inv.flags:
        host = ctx.persona.hostname
        return (
            f"Matching Defaults entries for {ctx.username} on {host}:\n"
            "    env_reset, mail_badpass,\n"
            "    secure_path=/usr/local/sbin\\:/usr/local/bin\\:/usr/sbin\\:/usr/bin\\:/sbin\\:/bin\n"
            "\n"
            f"User {ctx.username} may run the following commands on {host}:\n"
            "    (ALL : ALL) ALL\n"
        )
    # Drop sudo's own options; the remainder runs as root.
    tokens = list(inv.tokens)
    while tokens and tokens[0].startswith("-"):
        option = tokens.pop(0)
        if option in ("-u", "-g") and tokens:
            tokens.pop(0)
    sub = parse_command(" ".join(tokens))
    if sub is None:
        return ""
    if "/" not in sub.name and sub.command not in COMMAND_TABLE:
        return f"sudo: {sub.name}: command not found\n"
    return dispatch(sub, replace(ctx, username="root"))


# ---------- System information ----------

_UNAME_FIELDS = "snrvmo"


def _handle_uname(inv: CommandInvocation, ctx: ShellContext) -> str:
    persona = ctx.persona
    if "--all" in inv.flags:
        return persona.kernel + "\n"
    letters = _short_letters(inv.flags)
    for letter in letters:
        if letter != "a" and letter not in _UNAME_FIELDS:
            return f"uname: invalid option -- '{letter}'\nTry 'uname --help' for more information.\n"
    if "a" in letters:
        return persona.kernel + "\n"
    values = {
        "s": "Linux",
        "n": persona.hostname,
        "r": persona.kernel_release,
        "v": persona.kernel_version,
        "m": persona.architecture,
        "o": "GNU/Linux",
    }
    selected = [values[f] for f in _UNAME_FIELDS if f in letters]
    return " ".join(selected or ["Linux"]) + "\n"


def _handle_hostname(inv: CommandInvocation, ctx: ShellContext) -> str:
    if "-I" in inv.flags:
        return ctx.persona.ip_address + " \n"
    if "-i" in inv.flags:
        return "127.0.1.1\n"
    return ctx.persona.hostname + "\n"


def _handle_uptime(inv: CommandInvocation, ctx: ShellContext) -> str:
    minutes = _uptime_minutes(ctx)
    if "-p" in inv.flags:
        days, rem = divmod(minutes, 24 * 60)
        hours, mins = divmod(rem, 60)
        parts = []
        if days:
            parts.append(f"{days} day" + ("s" if days != 1 else ""))
        if hours:
            parts.append(f"{hours} hour" + ("s" if hours != 1 else ""))
        parts.append(f"{mins} minute" + ("s" if mins != 1 else ""))
        return "up " + ", ".join(parts) + "\n"
    if "-s" in inv.flags:
        since = datetime.now() - timedelta(minutes=minutes)
        return since.strftime("%Y-%m-%d %H:%M:%S") + "\n"
    load = ", ".join(f"{v:.2f}" for v in _load_average(ctx))
    now = datetime.now().strftime("%H:%M:%S")
    return f" {now} {_format_up(minutes)},  1 user,  load average: {load}\n"


def _handle_date(inv: CommandInvocation, ctx: ShellContext) -> str:
    return time.strftime("%a %b %d %H:%M:%S %Z %Y") + "\n"


def _handle_nproc(inv: CommandInvocation, ctx: ShellContext) -> str:
    return f"{ctx.persona.cpu_cores}\n"


def _handle_w(inv: CommandInvocation, ctx: ShellContext) -> str:
    minutes = _uptime_minutes(ctx)
    load = ", ".join(f"{v:.2f}" for v in _load_average(ctx))
    now = datetime.now()
    return (
        f" {now.strftime('%H:%M:%S')} {_format_up(minutes)},  1 user,  load average: {load}\n"
        "USER     TTY      FROM             LOGIN@   IDLE   JCPU   PCPU WHAT\n"
        f"{ctx.username:<8} pts/0    {ctx.session.peer_ip:<16} {now.strftime('%H:%M')}    0.00s  0.02s  0.00s w\n"
    )


def _handle_lscpu(inv: CommandInvocation, ctx: ShellContext) -> str:
    persona = ctx.persona
    cores = persona.cpu_cores
    if persona.has_pci_bus:
        rows = [
            ("Architecture", persona.architecture),
            ("CPU op-mode(s)", "32-bit, 64-bit"),
            ("Byte Order", "Little Endian"),
            ("Address sizes", "39 bits physical, 48 bits virtual"),
            ("CPU(s)", str(cores)),
            ("On-line CPU(s) list", f"0-{cores - 1}"),
            ("Thread(s) per core", "1"),
            ("Core(s) per socket", str(cores)),
            ("Socket(s)", "1"),
            ("NUMA node(s)", "1"),
            ("Vendor ID", "GenuineIntel"),
            ("CPU family", "6"),
            ("Model", "158"),
            ("Model name", persona.cpu_model),
            ("Stepping", "10"),
            ("CPU MHz", "3000.000"),
            ("CPU max MHz", "4100.0000"),
            ("CPU min MHz", "800.0000"),
            ("BogoMIPS", "6000.00"),
            ("Virtualization", "VT-x"),
            ("L1d cache", f"{32 * cores} KiB"),
            ("L1i cache", f"{32 * cores} KiB"),
            ("L2 cache", f"{256 * cores // 1024} MiB" if cores >= 4 else f"{256 * cores} KiB"),
            ("L3 cache", "9 MiB"),
            ("NUMA node0 CPU(s)", f"0-{cores - 1}"),
        ]
    elif persona.architecture == "mips":
        rows = [
            ("Architecture", persona.architecture),
            ("Byte Order", "Little Endian"),
            ("CPU(s)", str(cores)),
            ("On-line CPU(s) list", f"0-{cores - 1}"),
            ("Thread(s) per core", "2"),
            ("Core(s) per socket", str(max(1, cores // 2))),
            ("Socket(s)", "1"),
            ("Model name", persona.cpu_model),
            ("BogoMIPS", "586.13"),
        ]
    else:
        rows = [
            ("Architecture", persona.architecture),
            ("Byte Order", "Little Endian"),
            ("CPU(s)", str(cores)),
            ("On-line CPU(s) list", f"0-{cores - 1}"),
            ("Thread(s) per core", "1"),
            ("Core(s) per socket", str(cores)),
            ("Socket(s)", "1"),
            ("Vendor ID", "ARM"),
            ("Model", "4"),
            ("Model name", "Cortex-A53"),
            ("Stepping", "r0p4"),
            ("CPU max MHz", "1200.0000"),
            ("CPU min MHz", "600.0000"),
            ("BogoMIPS", "38.40"),
            ("Flags", "half thumb fastmult vfp edsp neon vfpv3 tls vfpv4 idiva idivt vfpd32 lpae evtstrm crc32"),
        ]
    return _lines([f"{(name + ':'):<24}{value}" for name, value in rows])


# ---------- VM-detection probes ----------


def _handle_systemd_detect_virt(inv: CommandInvocation, ctx: ShellContext) -> str:
    return "none\n"


_DMI_KEYWORDS = (
    "bios-vendor",
    "bios-version",
    "bios-release-date",
    "system-manufacturer",
    "system-product-name",
    "system-version",
    "system-serial-number",
    "system-uuid",
    "baseboard-manufacturer",
    "baseboard-product-name",
    "chassis-type",
)


def _dmi_string(keyword: str, persona: Persona) -> Optional[str]:
    values = {
        "bios-vendor": persona.bios_vendor or persona.vendor,
        "bios-version": _BIOS_VERSION,
        "bios-release-date": _BIOS_DATE,
        "system-manufacturer": persona.vendor,
        "system-product-name": persona.model,
        "system-version": "Not Specified",
        "system-serial-number": _SYSTEM_SERIAL,
        "system-uuid": _SYSTEM_UUID,
        "baseboard-manufacturer": persona.vendor,
        "baseboard-product-name": _BOARD_NAME,
        "chassis-type": "Mini Tower",
    }
    return values.get(keyword)


def _handle_dmidecode(inv: CommandInvocation, ctx: ShellContext) -> str:
    persona = ctx.persona
    if not persona.has_pci_bus:
        return command_not_found(inv.name)
    if not ctx.is_root:
        return (
            "/sys/firmware/dmi/tables/smbios_entry_point: Permission denied\n"
            "Scanning /dev/mem for entry point.\n"
            "/dev/mem: Permission denied\n"
        )
    if "-s" in inv.flags or "--string" in inv.flags:
        keyword = _option_value(inv.tokens, "-s") or _option_value(inv.tokens, "--string")
        if keyword is None:
            return "dmidecode: option requires an argument -- 's'\n" + _dmi_keyword_help("String")
        value = _dmi_string(keyword, persona)
        if value is None:
            return f"Invalid string keyword: {keyword}\n" + _dmi_keyword_help("string")
        return value + "\n"
    return f"""# dmidecode 3.2
Getting SMBIOS data from sysfs.
SMBIOS 3.1.1 present.
Table at 0x000E0000.

Handle 0x0000, DMI type 0, 26 bytes
BIOS Information
\tVendor: {persona.bios_vendor or persona.vendor}
\tVersion: {_BIOS_VERSION}
\tRelease Date: {_BIOS_DATE}
\tAddress: 0xF0000
\tRuntime Size: 64 kB
\tROM Size: 16 MB
\tCharacteristics:
\t\tPCI is supported
\t\tPNP is supported
\t\tBIOS is upgradeable
\t\tBIOS shadowing is allowed
\t\tBoot from CD is supported
\t\tSelectable boot is supported
\t\tACPI is supported
\t\tUSB legacy is supported
\t\tUEFI is supported
\tBIOS Revision: 1.20

Handle 0x0001, DMI type 1, 27 bytes
System Information
\tManufacturer: {persona.vendor}
\tProduct Name: {persona.model}
\tVersion: Not Specified
\tSerial Number: {_SYSTEM_SERIAL}
\tUUID: {_SYSTEM_UUID}
\tWake-up Type: Power Switch
\tSKU Number: 085A
\tFamily: OptiPlex

Handle 0x0002, DMI type 2, 15 bytes
Base Board Information
\tManufacturer: {persona.vendor}
\tProduct Name: {_BOARD_NAME}
\tVersion: A00
\tSerial Number: /{_SYSTEM_SERIAL}/CNWS20089D00LC/
\tFeatures:
\t\tBoard is a hosting board
\t\tBoard is replaceable
\tType: Motherboard

Handle 0x0003, DMI type 3, 22 bytes
Chassis Information
\tManufacturer: {persona.vendor}
\tType: Mini Tower
\tLock: Not Present
\tSerial Number: {_SYSTEM_SERIAL}
\tBoot-up State: Safe
\tPower Supply State: Safe
\tThermal State: Safe

Handle 0x0004, DMI type 4, 48 bytes
Processor Information
\tSocket Designation: CPU 1
\tType: Central Processor
\tFamily: Core i5
\tManufacturer: Intel(R) Corporation
\tVersion: {persona.cpu_model}
\tMax Speed: 4100 MHz
\tCurrent Speed: 3000 MHz
\tCore Count: {persona.cpu_cores}
\tThread Count: {persona.cpu_cores}
"""


def _dmi_keyword_help(label: str) -> str:
    return f"Valid {label} keywords are:\n" + "".join(f"  {k}\n" for k in _DMI_KEYWORDS)


def _handle_lspci(inv: CommandInvocation, ctx: ShellContext) -> str:
    if not ctx.persona.has_pci_bus:
        return command_not_found(inv.name)
    return _lines(list(ctx.persona.pci_devices))


def _dmesg_lines(persona: Persona) -> List[str]:
    boot = [
        f"Linux version {persona.kernel_release} (gcc version 10.2.1 20210110) {persona.kernel_version}",
    ]
    if persona.has_pci_bus:
        boot += [
            f"Command line: BOOT_IMAGE=/vmlinuz-{persona.kernel_release} root={persona.root_device} ro quiet splash",
            "x86/fpu: Supporting XSAVE feature 0x001: 'x87 floating point registers'",
            "BIOS-provided physical RAM map:",
            "BIOS-e820: [mem 0x0000000000000000-0x0000000000057fff] usable",
            f"DMI: {persona.vendor} {persona.model}/{_BOARD_NAME}, BIOS {_BIOS_VERSION} {_BIOS_DATE}",
            "tsc: Detected 3000.000 MHz processor",
            "ACPI: RSDP 0x00000000000F0490 000024 (v02 DELL  )",
            f"smpboot: CPU0: {persona.cpu_model} (family: 0x6, model: 0x9e, stepping: 0xa)",
            f"smp: Brought up 1 node, {persona.cpu_cores} CPUs",
            "PCI: Using configuration type 1 for base access",
            "e1000e 0000:00:1f.6 eth0: (PCI Express:2.5GT/s:Width x1) " + persona.mac_address,
            f"EXT4-fs ({basename(persona.root_device)}): mounted filesystem with ordered data mode. Opts: (null)",
            "e1000e 0000:00:1f.6 eth0: NIC Link is Up 1000 Mbps Full Duplex, Flow Control: Rx/Tx",
        ]
    elif persona.architecture == "mips":
        boot += [
            f"SoC Type: {persona.hardware} ver:1 eco:3",
            "bootconsole [early0] enabled",
            f"CPU0 revision is: 0001992f ({persona.cpu_model})",
            "MIPS: machine is " + persona.model,
            "Determined physical RAM map:",
            "Primary instruction cache 32kB, VIPT, 4-way, linesize 32 bytes.",
            "mtk_soc_eth 1e100000.ethernet eth0: mediatek frame engine at 0xbe100000, irq 21",
            "mtk_soc_eth 1e100000.ethernet eth0: port 0 link up",
        ]
    else:
        boot += [
            "Booting Linux on physical CPU 0x0",
            f"CPU: {persona.cpu_model}",
            f"OF: fdt: Machine model: {persona.model}",
            "Memory policy: Data cache writealloc",
            f"smp: Brought up 1 node, {persona.cpu_cores} CPUs",
            "bcm2835-dma 3f007000.dma: DMA legacy API manager, dmachans=0x1",
            "mmc0: host does not support reading read-only switch, assuming write-enable",
            "EXT4-fs (mmcblk0p2): mounted filesystem with ordered data mode. Opts: (null)",
            f"smsc95xx 1-1.1:1.0 eth0: register 'smsc95xx' at usb-3f980000.usb-1.1, smsc95xx USB 2.0 Ethernet, {persona.mac_address}",
            "smsc95xx 1-1.1:1.0 eth0: link up, 100Mbps, full-duplex, lpa 0xCDE1",
        ]
    stamped = []
    for index, line in enumerate(boot):
        seconds = 0.0 if index < 4 else index * 0.731 + index * index * 0.113
        stamped.append(f"[{seconds:12.6f}] {line}")
    return stamped


def _handle_dmesg(inv: CommandInvocation, ctx: ShellContext) -> str:
    if not ctx.is_root:
        return "dmesg: read kernel buffer failed: Operation not permitted\n"
    return _lines(_dmesg_lines(ctx.persona))


# ---------- Filesystem ----------


def _handle_pwd(inv: CommandInvocation, ctx: ShellContext) -> str:
    return ctx.filesystem.cwd + "\n"


def _handle_cd(inv: CommandInvocation, ctx: ShellContext) -> str:
    fs = ctx.filesystem
    if len(inv.args) > 1:
        return "bash: cd: too many arguments\n"
    echo = False
    if inv.args:
        target = inv.args[0]
    elif "-" in inv.flags:
        target = ctx.env.get("OLDPWD", "")
        if not target:
            return "bash: cd: OLDPWD not set\n"
        echo = True
    else:
        target = fs.home

    try:
        node = fs.get(target)
        if node.is_dir and not _can_enter(node, ctx):
            return f"bash: cd: {target}: Permission denied\n"
        previous = fs.cwd
        new_cwd = fs.change_directory(target)
    except PathNotFound:
        return f"bash: cd: {target}: No such file or directory\n"
    except NotADirectory:
        return f"bash: cd: {target}: Not a directory\n"

    ctx.env["OLDPWD"] = previous
    ctx.env["PWD"] = new_cwd
    return new_cwd + "\n" if echo else ""


def _ls_long_line(node: FsNode, name: str) -> str:
    stamp = datetime.fromtimestamp(node.mtime).strftime("%b %d %H:%M")
    links = 2 + sum(1 for _ in node.children) if node.is_dir else 1
    return f"{node.format_mode_string()} {links:>2} {node.owner:<8} {node.group:<8} {node.size:>8} {stamp} {name}"


def _ls_sort_key(name: str) -> str:
    return name.lstrip(".").lower()


def _handle_ls(inv: CommandInvocation, ctx: ShellContext) -> str:
    fs = ctx.filesystem
    letters = _short_letters(inv.flags)
    show_all = "a" in letters or "--all" in inv.flags
    almost_all = "A" in letters
    long_format = "l" in letters
    one_per_line = "1" in letters

    targets = list(inv.args) or [""]
    errors: List[str] = []
    file_lines: List[str] = []
    dir_blocks: List[Tuple[str, List[str]]] = []

    for target in targets:
        try:
            node = fs.get(target)
        except PathNotFound:
            errors.append(f"ls: cannot access '{target}': No such file or directory")
            continue
        if not node.is_dir:
            file_lines.append(_ls_long_line(node, target) if long_format else target)
            continue
        if not _can_read(node, ctx):
            errors.append(f"ls: cannot open directory '{target or '.'}': Permission denied")
            continue

        names = fs.list(target)
        if not (show_all or almost_all):
            names = [n for n in names if not n.startswith(".")]
        names.sort(key=_ls_sort_key)
        prefix = node.path.rstrip("/") + "/"
        entries = [(n, fs.get(prefix + n)) for n in names]
        if show_all:
            try:
                parent = fs.get(node.path + "/..")
            except PathNotFound:
                parent = node
            entries = [(".", node), ("..", parent)] + entries

        if long_format:
            total = sum(4 if child.is_dir else max(4, (child.size + 4095) // 4096 * 4) for _, child in entries)
            block = [f"total {total}"] + [_ls_long_line(child, n) for n, child in entries]
        elif one_per_line:
            block = [n for n, _ in entries]
        else:
            block = ["  ".join(n for n, _ in entries)] if entries else []
        dir_blocks.append((target, block))

    out: List[str] = list(errors)
    if file_lines:
        out.extend(file_lines if (long_format or one_per_line) else ["  ".join(file_lines)])
    multiple = len(targets) > 1
    for index, (target, block) in enumerate(dir_blocks):
        if multiple:
            if out or index:
                out.append("")
            out.append(f"{target}:")
        out.extend(block)
    return _lines(out)


def _handle_cat(inv: CommandInvocation, ctx: ShellContext) -> str:
    fs = ctx.filesystem
    chunks: List[str] = []
    for target in inv.args:
        try:
            node = fs.get(target)
            if node.is_dir:
                raise NotAFile(target)
            if not _can_read(node, ctx):
                chunks.append(f"cat: {target}: Permission denied\n")
                continue
            chunks.append(node.read())
        except PathNotFound:
            chunks.append(f"cat: {target}: No such file or directory\n")
        except NotAFile:
            chunks.append(f"cat: {target}: Is a directory\n")
    return "".join(chunks)


_VAR_RE = re.compile(r"\$\{(\w+)\}|\$(\w+|\?)")
_ECHO_OPTIONS = {"-n", "-e", "-E", "-ne", "-en", "-nE", "-En"}


def _expand_vars(text: str, env: Mapping[str, str]) -> str:
    def repl(match: "re.Match[str]") -> str:
        name = match.group(1) or match.group(2)
        if name == "?":
            return "0"
        return env.get(name, "")

    return _VAR_RE.sub(repl, text)


def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


_ESCAPE_RE = re.compile(r"\\(x[0-9a-fA-F]{1,2}|0[0-7]{0,3}|[\\abcefnrtv])")
_SIMPLE_ESCAPES = {
    "\\": "\\",
    "a": "\a",
    "b": "\b",
    "e": "\x1b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
}


def _decode_escapes(text: str) -> Tuple[str, bool]:
    """Interpret ``echo -e`` backslash escapes.

    The second value is True when ``\\c`` cut the output short.
    """
    out: List[str] = []
    pos = 0
    for match in _ESCAPE_RE.finditer(text):
        out.append(text[pos:match.start()])
        code = match.group(1)
        if code == "c":
            return "".join(out), True
        if code[0] == "x":
            out.append(chr(int(code[1:], 16)))
        elif code[0] == "0":
            out.append(chr(int(code[1:] or "0", 8) & 0xFF))
        else:
            out.append(_SIMPLE_ESCAPES[code])
        pos = match.end()
    out.append(text[pos:])
    return "".join(out), False


def _handle_echo(inv: CommandInvocation, ctx: ShellContext) -> str:
    tokens = list(inv.tokens)
    newline = True
    escapes = False
    while tokens and tokens[0] in _ECHO_OPTIONS:
        option = tokens.pop(0)
        if "n" in option:
            newline = False
        if "e" in option:
            escapes = True
        elif "E" in option:
            escapes = False

    # A single > or >> redirection, either spaced or glued to the target.
    target = None
    append = False
    words: List[str] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if target is None and token.startswith(">"):
            append = token.startswith(">>")
            rest = token[2:] if append else token[1:]
            if rest:
                target = rest
            elif index + 1 < len(tokens):
                target = tokens[index + 1]
                index += 1
            else:
                return "bash: syntax error near unexpected token `newline'\n"
        else:
            words.append(token)
        index += 1

    text = _expand_vars(_unquote(" ".join(words)), ctx.env)
    if escapes:
        text, cut = _decode_escapes(text)
        newline = newline and not cut
    if newline:
        text += "\n"
    if target is None:
        return text

    try:
        ctx.filesystem.write_file(target, text, append=append, owner=ctx.username)
    except (PathNotFound, NotADirectory):
        return f"bash: {target}: No such file or directory\n"
    except NotAFile:
        return f"bash: {target}: Is a directory\n"
    return ""


def _handle_touch(inv: CommandInvocation, ctx: ShellContext) -> str:
    if not inv.args:
        return "touch: missing file operand\nTry 'touch --help' for more information.\n"
    fs = ctx.filesystem
    errors = []
    for target in inv.args:
        if fs.exists(target):
            continue
        try:
            fs.write_file(target, "", owner=ctx.username)
        except (PathNotFound, NotADirectory):
            errors.append(f"touch: cannot touch '{target}': No such file or directory")
    return _lines(errors)


def _handle_mkdir(inv: CommandInvocation, ctx: ShellContext) -> str:
    if not inv.args:
        return "mkdir: missing operand\nTry 'mkdir --help' for more information.\n"
    fs = ctx.filesystem
    parents = "p" in _short_letters(inv.flags) or "--parents" in inv.flags
    errors = []
    for target in inv.args:
        try:
            if parents:
                path = ""
                for part in fs.normalize(target).strip("/").split("/"):
                    path += "/" + part
                    if not fs.exists(path):
                        fs.make_directory(path, owner=ctx.username)
            else:
                fs.make_directory(target, owner=ctx.username)
        except PathExists:
            errors.append(f"mkdir: cannot create directory '{target}': File exists")
        except PathNotFound:
            errors.append(f"mkdir: cannot create directory '{target}': No such file or directory")
        except (NotADirectory, NotAFile):
            errors.append(f"mkdir: cannot create directory '{target}': Not a directory")
    return _lines(errors)


def _handle_rm(inv: CommandInvocation, ctx: ShellContext) -> str:
    letters = _short_letters(inv.flags)
    recursive = "r" in letters or "R" in letters or "--recursive" in inv.flags
    force = "f" in letters or "--force" in inv.flags
    if not inv.args:
        if force:
            return ""
        return "rm: missing operand\nTry 'rm --help' for more information.\n"
    errors = []
    for target in inv.args:
        try:
            ctx.filesystem.remove(target, recursive=recursive)
        except ProtectedPath:
            if not recursive:
                errors.append(f"rm: cannot remove '{target}': Is a directory")
            elif "--no-preserve-root" in inv.flags:
                errors.append(f"rm: cannot remove '{target}': Device or resource busy")
            else:
                errors.append(f"rm: it is dangerous to operate recursively on '{target}'")
                errors.append("rm: use --no-preserve-root to override this failsafe")
        except PathNotFound:
            if not force:
                errors.append(f"rm: cannot remove '{target}': No such file or directory")
        except NotAFile:
            errors.append(f"rm: cannot remove '{target}': Is a directory")
    return _lines(errors)


_SYMBOLIC_MODE_RE = re.compile(r"^([ugoa]*)([+\-=])([rwxXst]*)$")


def _apply_mode(spec: str, current: int) -> Optional[int]:
    """Apply an octal or symbolic chmod mode; None if it is invalid."""
    if re.fullmatch(r"[0-7]{1,4}", spec):
        return int(spec, 8)
    mode = current
    for clause in spec.split(","):
        match = _SYMBOLIC_MODE_RE.match(clause)
        if not match:
            return None
        who, op, perms = match.groups()
        who = who.replace("a", "ugo") or "ugo"
        bits = 0
        for target, shift in (("u", 6), ("g", 3), ("o", 0)):
            if target not in who:
                continue
            for perm, value in (("r", 4), ("w", 2), ("x", 1), ("X", 1)):
                if perm in perms:
                    bits |= value << shift
        if op == "+":
            mode |= bits
        elif op == "-":
            mode &= ~bits
        else:
            for target, shift in (("u", 6), ("g", 3), ("o", 0)):
                if target in who:
                    mode &= ~(0o7 << shift)
            mode |= bits
    return mode


def _handle_chmod(inv: CommandInvocation, ctx: ShellContext) -> str:
    tokens = [t for t in inv.tokens if t not in ("-R", "-v", "-f", "--recursive")]
    if not tokens:
        return "chmod: missing operand\nTry 'chmod --help' for more information.\n"
    spec, targets = tokens[0], tokens[1:]
    if not targets:
        return f"chmod: missing operand after '{spec}'\nTry 'chmod --help' for more information.\n"
    fs = ctx.filesystem
    errors = []
    for target in targets:
        try:
            node = fs.get(target)
        except PathNotFound:
            errors.append(f"chmod: cannot access '{target}': No such file or directory")
            continue
        mode = _apply_mode(spec, node.mode & 0o7777)
        if mode is None:
            return f"chmod: invalid mode: '{spec}'\nTry 'chmod --help' for more information.\n"
        if not ctx.is_root and node.owner != ctx.username:
            errors.append(f"chmod: changing permissions of '{target}': Operation not permitted")
            continue
        fs.chmod(target, mode)
    return _lines(errors)


def _handle_find(inv: CommandInvocation, ctx: ShellContext) -> str:
    fs = ctx.filesystem
    tokens = list(inv.tokens)
    starts: List[str] = []
    while tokens and not tokens[0].startswith("-"):
        starts.append(tokens.pop(0))
    name_pattern = None
    iname = False
    kind = None
    while tokens:
        token = tokens.pop(0)
        if token in ("-name", "-iname") and tokens:
            name_pattern = tokens.pop(0).strip("'\"")
            iname = token == "-iname"
        elif token == "-type" and tokens:
            kind = tokens.pop(0)
        elif token in ("-maxdepth", "-mindepth", "-perm", "-user", "-size") and tokens:
            tokens.pop(0)

    out: List[str] = []
    for start in starts or ["."]:
        try:
            base = fs.normalize(start)
            walked = list(fs.walk(start))
        except PathNotFound:
            out.append(f"find: '{start}': No such file or directory")
            continue
        denied: List[str] = []
        for path, node in walked:
            if any(path.startswith(d + "/") for d in denied):
                continue
            if node.is_dir and not _can_read(node, ctx):
                denied.append(path)
                out.append(f"find: '{_display_path(start, base, path)}': Permission denied")
                continue
            if kind == "f" and node.is_dir or kind == "d" and not node.is_dir:
                continue
            if name_pattern is not None:
                name = basename(path)
                if iname:
                    if not fnmatch.fnmatch(name.lower(), name_pattern.lower()):
                        continue
                elif not fnmatch.fnmatchcase(name, name_pattern):
                    continue
            out.append(_display_path(start, base, path))
    return _lines(out)


def _display_path(start: str, base: str, path: str) -> str:
    """Render a walked path relative to how the start path was typed."""
    suffix = path[len(base):] if base != "/" else path[1:]
    if base == "/":
        return "/" + suffix if suffix else "/"
    return start.rstrip("/") + suffix if start != "/" else path


def _handle_grep(inv: CommandInvocation, ctx: ShellContext) -> str:
    tokens = [t for t in inv.tokens if not t.startswith("-")]
    letters = _short_letters(inv.flags)
    if not tokens:
        return "Usage: grep [OPTION]... PATTERNS [FILE]...\nTry 'grep --help' for more information.\n"
    pattern, files = _unquote(tokens[0]), tokens[1:]
    if not files and ctx.stdin is None:
        return ""
    flags = re.IGNORECASE if "i" in letters else 0
    try:
        regex = re.compile(pattern, flags)
    except re.error:
        regex = re.compile(re.escape(pattern), flags)

    fs = ctx.filesystem
    out: List[str] = []
    for target in files or ["-"]:
        if not files:
            content = ctx.stdin or ""
        else:
            try:
                node = fs.get(target)
                if node.is_dir:
                    out.append(f"grep: {target}: Is a directory")
                    continue
                if not _can_read(node, ctx):
                    out.append(f"grep: {target}: Permission denied")
                    continue
                content = node.read()
            except PathNotFound:
                out.append(f"grep: {target}: No such file or directory")
                continue

        matches = []
        for number, line in enumerate(content.splitlines(), start=1):
            hit = regex.search(line) is not None
            if hit != ("v" in letters):
                matches.append(f"{number}:{line}" if "n" in letters else line)
        prefix = f"{target}:" if len(files) > 1 else ""
        if "c" in letters:
            out.append(f"{prefix}{len(matches)}")
        else:
            out.extend(prefix + m for m in matches)
    return _lines(out)


def _handle_which(inv: CommandInvocation, ctx: ShellContext) -> str:
    fs = ctx.filesystem
    out = []
    directories = ctx.env.get("PATH", DEFAULT_PATH).split(":")
    for name in inv.args:
        for directory in directories:
            candidate = f"{directory.rstrip('/')}/{name}"
            if fs.exists(candidate) and not fs.get(candidate).is_dir:
                out.append(candidate)
                break
    return _lines(out)


# ---------- Session environment ----------


def _handle_history(inv: CommandInvocation, ctx: ShellContext) -> str:
    history = ctx.session.history
    if "-c" in inv.flags:
        del history[:]
        return ""
    return _lines([f"{index:>5}  {line}" for index, line in enumerate(history, start=1)])


def _handle_clear(inv: CommandInvocation, ctx: ShellContext) -> str:
    return "\x1b[H\x1b[2J"


def _handle_env(inv: CommandInvocation, ctx: ShellContext) -> str:
    if inv.command == "printenv" and inv.args:
        return _lines([ctx.env[name] for name in inv.args if name in ctx.env])
    return _lines([f"{key}={value}" for key, value in ctx.env.items()])


def _handle_export(inv: CommandInvocation, ctx: ShellContext) -> str:
    if not inv.args:
        return _lines([f'declare -x {key}="{value}"' for key, value in sorted(ctx.env.items())])
    for assignment in inv.args:
        if "=" not in assignment:
            continue
        key, value = assignment.split("=", 1)
        if not re.fullmatch(r"[A-Za-z_]\w*", key):
            return f"bash: export: `{assignment}': not a valid identifier\n"
        ctx.env[key] = _expand_vars(_unquote(value), ctx.env)
    return ""


def _handle_sleep(inv: CommandInvocation, ctx: ShellContext) -> str:
    if not inv.args:
        return "sleep: missing operand\nTry 'sleep --help' for more information.\n"
    return ""


def _handle_shell(inv: CommandInvocation, ctx: ShellContext) -> Response:
    """``sh``/``bash``: ``-c`` scripts run through the same interpreter."""
    tokens = list(inv.tokens)
    if "-c" in tokens:
        script = _unquote(" ".join(tokens[tokens.index("-c") + 1:]))
        return run_line(script, replace(ctx, stdin=None))
    for target in inv.args:
        if not ctx.filesystem.exists(target):
            return f"{inv.name}: {target}: No such file or directory\n"
    return ""


def _handle_exit(inv: CommandInvocation, ctx: ShellContext) -> Response:
    return EXIT_SENTINEL


# ---------- Processes & resources ----------


def _process_table(ctx: ShellContext) -> List[Tuple[str, int, str, str]]:
    """(user, pid, tty, command) rows shared by ps and top."""
    persona = ctx.persona
    shell = _shell_pid(ctx)
    rows = [
        ("root", 1, "?", "/sbin/init" if persona.architecture == "mips" else "/lib/systemd/systemd --system"),
        ("root", 2, "?", "[kthreadd]"),
        ("root", 3, "?", "[rcu_gp]"),
        ("root", 9, "?", "[ksoftirqd/0]"),
        ("root", 10, "?", "[rcu_sched]"),
    ]
    if persona.architecture != "mips":
        rows += [
            ("root", 241, "?", "/lib/systemd/systemd-journald"),
            ("root", 268, "?", "/lib/systemd/systemd-udevd"),
            ("message+", 371, "?", "/usr/bin/dbus-daemon --system"),
            ("root", 389, "?", "/usr/sbin/rsyslogd -n -iNONE"),
            ("root", 396, "?", "/usr/sbin/cron -f"),
        ]
    rows += [
        ("root", 412, "?", "/usr/sbin/sshd -D"),
        ("root", shell - 7, "?", f"sshd: {ctx.username}@pts/0"),
        (ctx.username, shell, "pts/0", "-bash"),
    ]
    return rows


def _handle_ps(inv: CommandInvocation, ctx: ShellContext) -> str:
    shell = _shell_pid(ctx)
    rng = ctx.rng
    wide = any(a in ("aux", "axu", "-aux", "-ef", "ax", "-e", "-A") for a in inv.tokens)
    if not wide:
        return (
            "    PID TTY          TIME CMD\n"
            f"{shell:>7} pts/0    00:00:00 bash\n"
            f"{shell + 53:>7} pts/0    00:00:00 ps\n"
        )
    lines = ["USER         PID %CPU %MEM    VSZ   RSS TTY      STAT START   TIME COMMAND"]
    for user, pid, tty, command in _process_table(ctx) + [(ctx.username, shell + 53, "pts/0", "ps " + " ".join(inv.tokens))]:
        vsz = rng.randint(2000, 170000) if not command.startswith("[") else 0
        rss = vsz // rng.randint(3, 12) if vsz else 0
        stat = "R+" if pid == shell + 53 else ("Ss" if tty == "pts/0" or pid == 1 else "S")
        start = "10:15" if tty == "pts/0" else datetime.now().strftime("%b%d")
        lines.append(
            f"{user:<8} {pid:>7} {rng.uniform(0, 0.4):4.1f} {rng.uniform(0, 1.2):4.1f} {vsz:>6} {rss:>5} "
            f"{tty:<8} {stat:<4} {start:>5}   0:00 {command}"
        )
    return _lines(lines)


def _memory_snapshot(ctx: ShellContext) -> Dict[str, int]:
    total = ctx.persona.mem_total_kb
    rng = ctx.rng
    used = int(total * rng.uniform(0.12, 0.30))
    cache = int(total * rng.uniform(0.15, 0.30))
    shared = int(total * rng.uniform(0.005, 0.02))
    free = total - used - cache
    return {
        "total": total,
        "used": used,
        "free": free,
        "shared": shared,
        "cache": cache,
        "available": free + int(cache * 0.8),
    }


def _handle_free(inv: CommandInvocation, ctx: ShellContext) -> str:
    mem = _memory_snapshot(ctx)
    swap = ctx.persona.swap_total_kb
    letters = _short_letters(inv.flags)
    if "h" in letters:
        fmt = _human_free
    elif "m" in letters:
        fmt = lambda kb: str(kb // 1024)  # noqa: E731
    elif "g" in letters:
        fmt = lambda kb: str(kb // (1024 * 1024))  # noqa: E731
    else:
        fmt = str
    mem_row = [mem[k] for k in ("total", "used", "free", "shared", "cache", "available")]
    swap_row = [swap, 0, swap]
    return (
        "               total        used        free      shared  buff/cache   available\n"
        f"Mem:{fmt(mem_row[0]):>16}" + "".join(f"{fmt(v):>12}" for v in mem_row[1:]) + "\n"
        f"Swap:{fmt(swap_row[0]):>15}" + "".join(f"{fmt(v):>12}" for v in swap_row[1:]) + "\n"
    )


def _handle_top(inv: CommandInvocation, ctx: ShellContext) -> str:
    rng = ctx.rng
    mem = _memory_snapshot(ctx)
    load = ", ".join(f"{v:.2f}" for v in _load_average(ctx))
    processes = _process_table(ctx)
    idle = rng.uniform(94.0, 99.0)
    user_cpu = rng.uniform(0.3, (100 - idle) * 0.8)
    system_cpu = 100 - idle - user_cpu
    now = datetime.now().strftime("%H:%M:%S")
    mib = lambda kb: f"{kb / 1024:8.1f}"  # noqa: E731
    swap = ctx.persona.swap_total_kb
    lines = [
        f"top - {now} {_format_up(_uptime_minutes(ctx))},  1 user,  load average: {load}",
        f"Tasks: {len(processes) + 90:>3} total,   1 running, {len(processes) + 89:>3} sleeping,   0 stopped,   0 zombie",
        f"%Cpu(s): {user_cpu:4.1f} us, {system_cpu:4.1f} sy,  0.0 ni, {idle:4.1f} id,  0.0 wa,  0.0 hi,  0.0 si,  0.0 st",
        f"MiB Mem : {mib(mem['total'])} total, {mib(mem['free'])} free, {mib(mem['used'])} used, {mib(mem['cache'])} buff/cache",
        f"MiB Swap: {mib(swap)} total, {mib(swap)} free, {mib(0)} used. {mib(mem['available'])} avail Mem",
        "",
        "    PID USER      PR  NI    VIRT    RES    SHR S  %CPU  %MEM     TIME+ COMMAND",
    ]
    for user, pid, _tty, command in processes:
        name = command.split()[0].rsplit("/", 1)[-1].strip("[]-")
        virt = rng.randint(2000, 170000) if not command.startswith("[") else 0
        res = virt // rng.randint(3, 12) if virt else 0
        lines.append(
            f"{pid:>7} {user:<9} 20   0 {virt:>7} {res:>7} {res // 2:>6} S {rng.uniform(0, 0.7):5.1f} "
            f"{rng.uniform(0, 1.2):5.1f}   0:0{rng.randint(0, 9)}.{rng.randint(10, 99)} {name}"
        )
    return _lines(lines)


def _handle_df(inv: CommandInvocation, ctx: ShellContext) -> str:
    persona = ctx.persona
    rng = ctx.rng
    human = "h" in _short_letters(inv.flags)
    half_mem = persona.mem_total_kb // 2
    rows = [(persona.root_device, persona.disk_root_kb, int(persona.disk_root_kb * rng.uniform(0.10, 0.25)), "/")]
    rows += [
        ("devtmpfs", half_mem - 8192, 0, "/dev"),
        ("tmpfs", half_mem, rng.randint(0, 64), "/dev/shm"),
        ("tmpfs", persona.mem_total_kb // 10, rng.randint(800, 2400), "/run"),
    ]
    if persona.boot_device:
        boot_size = 258095 if persona.architecture.startswith("arm") else 523248
        rows.append((persona.boot_device, boot_size, int(boot_size * rng.uniform(0.15, 0.25)), "/boot"))

    if human:
        lines = ["Filesystem      Size  Used Avail Use% Mounted on"]
    else:
        lines = ["Filesystem     1K-blocks    Used Available Use% Mounted on"]
    for device, size, used, mount in rows:
        avail = size - used
        pct = f"{(used * 100 + size - 1) // size}%" if size else "-"
        if human:
            lines.append(f"{device:<15} {_human_size(size):>4}  {_human_size(used):>4}  {_human_size(avail):>4} {pct:>4} {mount}")
        else:
            lines.append(f"{device:<14} {size:>10} {used:>7} {avail:>9} {pct:>4} {mount}")
    return _lines(lines)


# ---------- Network ----------


def _handle_ifconfig(inv: CommandInvocation, ctx: ShellContext) -> str:
    persona = ctx.persona
    rng = ctx.rng
    network = _network(persona)
    rx_packets = rng.randint(100000, 900000)
    tx_packets = rng.randint(50000, rx_packets)
    rx_bytes = rx_packets * rng.randint(300, 900)
    tx_bytes = tx_packets * rng.randint(150, 600)
    lo_packets = rng.randint(200, 4000)
    lo_bytes = lo_packets * rng.randint(60, 120)

    def mib(value: int) -> str:
        return f"{value / 1024 / 1024:.1f} MiB"

    eth0 = f"""eth0: flags=4163<UP,BROADCAST,RUNNING,MULTICAST>  mtu 1500
        inet {persona.ip_address}  netmask {network.netmask}  broadcast {network.broadcast_address}
        inet6 {_link_local(persona.mac_address)}  prefixlen 64  scopeid 0x20<link>
        ether {persona.mac_address}  txqueuelen 1000  (Ethernet)
        RX packets {rx_packets}  bytes {rx_bytes} ({mib(rx_bytes)})
        RX errors 0  dropped {rng.randint(0, 40)}  overruns 0  frame 0
        TX packets {tx_packets}  bytes {tx_bytes} ({mib(tx_bytes)})
        TX errors 0  dropped 0 overruns 0  carrier 0  collisions 0
"""
    lo = f"""lo: flags=73<UP,LOOPBACK,RUNNING>  mtu 65536
        inet 127.0.0.1  netmask 255.0.0.0
        inet6 ::1  prefixlen 128  scopeid 0x10<host>
        loop  txqueuelen 1000  (Local Loopback)
        RX packets {lo_packets}  bytes {lo_bytes} ({mib(lo_bytes)})
        RX errors 0  dropped 0  overruns 0  frame 0
        TX packets {lo_packets}  bytes {lo_bytes} ({mib(lo_bytes)})
        TX errors 0  dropped 0 overruns 0  carrier 0  collisions 0
"""
    if inv.args:
        interface = inv.args[0]
        if interface == "eth0":
            return eth0
        if interface == "lo":
            return lo
        return f"{interface}: error fetching interface information: Device not found\n"
    return eth0 + "\n" + lo


def _handle_ip(inv: CommandInvocation, ctx: ShellContext) -> str:
    persona = ctx.persona
    network = _network(persona)
    obj = inv.args[0] if inv.args else ""
    link_lo = "1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue state UNKNOWN mode DEFAULT group default qlen 1000\n    link/loopback 00:00:00:00:00:00 brd 00:00:00:00:00:00\n"
    link_eth = f"2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc pfifo_fast state UP mode DEFAULT group default qlen 1000\n    link/ether {persona.mac_address} brd ff:ff:ff:ff:ff:ff\n"

    if obj in ("a", "ad", "addr", "address"):
        return (
            "1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue state UNKNOWN group default qlen 1000\n"
            "    link/loopback 00:00:00:00:00:00 brd 00:00:00:00:00:00\n"
            "    inet 127.0.0.1/8 scope host lo\n"
            "       valid_lft forever preferred_lft forever\n"
            "    inet6 ::1/128 scope host \n"
            "       valid_lft forever preferred_lft forever\n"
            "2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc pfifo_fast state UP group default qlen 1000\n"
            f"    link/ether {persona.mac_address} brd ff:ff:ff:ff:ff:ff\n"
            f"    inet {persona.ip_address}/{network.prefixlen} brd {network.broadcast_address} scope global dynamic eth0\n"
            "       valid_lft 85427sec preferred_lft 85427sec\n"
            f"    inet6 {_link_local(persona.mac_address)}/64 scope link \n"
            "       valid_lft forever preferred_lft forever\n"
        )
    if obj in ("l", "li", "link"):
        return link_lo + link_eth
    if obj in ("r", "ro", "route"):
        return (
            f"default via {gateway_for(persona)} dev eth0 proto dhcp src {persona.ip_address} metric 202 \n"
            f"{network} dev eth0 proto dhcp scope link src {persona.ip_address} metric 202 \n"
        )
    if not obj:
        return (
            "Usage: ip [ OPTIONS ] OBJECT { COMMAND | help }\n"
            "       ip [ -force ] -batch filename\n"
            "where  OBJECT := { link | address | addrlabel | route | rule | neigh | ntable |\n"
            "                   tunnel | tuntap | maddress | mroute | mrule | monitor | xfrm |\n"
            "                   netns | l2tp | fou | macsec | tcp_metrics | token | netconf | ila |\n"
            "                   vrf | sr | nexthop }\n"
        )
    return f'Object "{obj}" is unknown, try "ip help".\n'


def _handle_netstat(inv: CommandInvocation, ctx: ShellContext) -> str:
    letters = _short_letters(inv.flags)
    listening = "l" in letters
    show_all = "a" in letters
    programs = "p" in letters and ctx.is_root
    local = f"{ctx.persona.ip_address}:{SSH_PORT}"
    peer = f"{ctx.session.peer_ip}:{ctx.session.peer_port}"
    shell = _shell_pid(ctx)

    if listening:
        lines = ["Active Internet connections (only servers)"]
    elif show_all:
        lines = ["Active Internet connections (servers and established)"]
    else:
        lines = ["Active Internet connections (w/o servers)"]
    header = "Proto Recv-Q Send-Q Local Address           Foreign Address         State      "
    lines.append(header + (" PID/Program name" if programs else ""))

    def row(proto: str, local_addr: str, foreign: str, state: str, program: str) -> str:
        text = f"{proto:<5} {0:>6} {0:>6} {local_addr:<23} {foreign:<23} {state:<11}"
        return text + (f" {program}" if programs else "")

    if listening or show_all:
        lines.append(row("tcp", f"0.0.0.0:{SSH_PORT}", "0.0.0.0:*", "LISTEN", "412/sshd"))
        lines.append(row("tcp6", f":::{SSH_PORT}", ":::*", "LISTEN", "412/sshd"))
    if not listening:
        lines.append(row("tcp", local, peer, "ESTABLISHED", f"{shell - 7}/sshd: {ctx.username}"))
    return _lines(lines)


def _handle_ss(inv: CommandInvocation, ctx: ShellContext) -> str:
    letters = _short_letters(inv.flags)
    listening = "l" in letters
    show_all = "a" in letters
    programs = "p" in letters and ctx.is_root
    local = f"{ctx.persona.ip_address}:{SSH_PORT}"
    peer = f"{ctx.session.peer_ip}:{ctx.session.peer_port}"
    shell = _shell_pid(ctx)

    lines = ["Netid State  Recv-Q Send-Q   Local Address:Port     Peer Address:Port Process"]
    if listening or show_all:
        proc = ' users:(("sshd",pid=412,fd=3))' if programs else ""
        lines.append(f"tcp   LISTEN 0      128          0.0.0.0:{SSH_PORT:<5}         0.0.0.0:*    {proc}")
        lines.append(f"tcp   LISTEN 0      128             [::]:{SSH_PORT:<5}            [::]:*    {proc}")
    if not listening:
        proc = f' users:(("sshd",pid={shell - 7},fd=4))' if programs else ""
        lines.append(f"tcp   ESTAB  0      0      {local:>20} {peer:>21}{proc}")
    return _lines(lines)


def _handle_ping(inv: CommandInvocation, ctx: ShellContext) -> str:
    if not inv.args:
        return "ping: usage error: Destination address required\n"
    rng = ctx.rng
    count_value = _option_value(inv.tokens, "-c")
    try:
        count = max(1, min(int(count_value), 10)) if count_value else 4
    except ValueError:
        return f"ping: invalid argument: '{count_value}'\n"
    target = inv.args[-1]
    try:
        address = str(ipaddress.ip_address(target))
    except ValueError:
        if not re.fullmatch(r"[A-Za-z0-9.-]+", target) or "." not in target:
            return f"ping: {target}: Name or service not known\n"
        address = f"{rng.randint(11, 223)}.{rng.randint(0, 255)}.{rng.randint(0, 255)}.{rng.randint(1, 254)}"

    base = rng.uniform(8.0, 40.0)
    times = [base + rng.uniform(-1.5, 3.5) for _ in range(count)]
    lines = [f"PING {target} ({address}) 56(84) bytes of data."]
    for seq, value in enumerate(times, start=1):
        lines.append(f"64 bytes from {address}: icmp_seq={seq} ttl={rng.choice((54, 55, 56, 117))} time={value:.1f} ms")
    mean = sum(times) / count
    mdev = (sum((t - mean) ** 2 for t in times) / count) ** 0.5
    lines += [
        "",
        f"--- {target} ping statistics ---",
        f"{count} packets transmitted, {count} received, 0% packet loss, time {(count - 1) * 1001 + rng.randint(0, 9)}ms",
        f"rtt min/avg/max/mdev = {min(times):.3f}/{mean:.3f}/{max(times):.3f}/{mdev:.3f} ms",
    ]
    return _lines(lines)


# ---------- Downloads ----------


def _urls(tokens: Tuple[str, ...]) -> List[str]:
    return [t for t in tokens if t.startswith(("http://", "https://"))]


def _remote_name(url: str, default: str) -> str:
    path = urlparse(url).path
    name = path.rsplit("/", 1)[-1]
    return name or default


def _fake_address(host: str, rng: random.Random) -> str:
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return f"{rng.randint(11, 223)}.{rng.randint(0, 255)}.{rng.randint(0, 255)}.{rng.randint(1, 254)}"


def _payload(size: int) -> str:
    return "\x7fELF\x01\x01\x01" + "\x00" * max(0, size - 7)


def _handle_wget(inv: CommandInvocation, ctx: ShellContext) -> str:
    urls = _urls(inv.tokens)
    if not urls:
        return "wget: missing URL\nUsage: wget [OPTION]... [URL]...\n\nTry `wget --help' for more options.\n"

    quiet = False
    output_name = None
    tokens = list(inv.tokens)
    for index, token in enumerate(tokens):
        if token.startswith("-") and not token.startswith("--"):
            if "q" in token:
                quiet = True
            if "O" in token:
                rest = token[token.index("O") + 1:]
                if rest:
                    output_name = rest
                elif index + 1 < len(tokens):
                    output_name = tokens[index + 1]
        elif token.startswith("--output-document="):
            output_name = token.split("=", 1)[1]
        elif token == "--quiet":
            quiet = True

    rng = ctx.rng
    fs = ctx.filesystem
    out: List[str] = []
    for url in urls:
        ctx.report_download(url, "wget")
        parsed = urlparse(url)
        host = parsed.hostname or "localhost"
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        address = _fake_address(host, rng)
        size = rng.randint(8000, 64000)

        if output_name == "-":
            filename = "-"
        elif output_name:
            filename = output_name
        else:
            filename = _remote_name(url, "index.html")
            candidate, suffix = filename, 1
            while fs.exists(candidate):
                candidate = f"{filename}.{suffix}"
                suffix += 1
            filename = candidate

        started = datetime.now()
        if filename != "-":
            try:
                fs.write_file(filename, _payload(size), mode=0o644, owner=ctx.username)
            except (PathNotFound, NotADirectory, NotAFile):
                out.append(f"{filename}: No such file or directory")
                continue
        if quiet:
            continue
        finished = started + timedelta(seconds=rng.uniform(0.1, 1.5))
        speed = rng.uniform(1.0, 12.0)
        out += [
            f"--{started.strftime('%Y-%m-%d %H:%M:%S')}--  {url}",
            f"Resolving {host} ({host})... {address}",
            f"Connecting to {host} ({host})|{address}|:{port}... connected.",
            "HTTP request sent, awaiting response... 200 OK",
            f"Length: {size} ({size / 1024:.0f}K) [application/octet-stream]",
            f"Saving to: '{filename}'",
            "",
            f"{filename[:18]:<18} 100%[===================>] {size / 1024:6.2f}K  --.-KB/s    in 0.{rng.randint(1, 9)}s",
            "",
            f"{finished.strftime('%Y-%m-%d %H:%M:%S')} ({speed:.2f} MB/s) - '{filename}' saved [{size}/{size}]",
            "",
        ]
    return _lines(out)


_CURL_BINARY_WARNING = """Warning: Binary output can mess up your terminal. Use "--output -" to tell
Warning: curl to output it to your terminal anyway, or consider "--output
Warning: <FILE>" to save to a file.
"""


def _handle_curl(inv: CommandInvocation, ctx: ShellContext) -> str:
    urls = _urls(inv.tokens)
    if not urls:
        if inv.args:
            return f"curl: (6) Could not resolve host: {inv.args[-1]}\n"
        return "curl: try 'curl --help' or 'curl --manual' for more information\n"

    letters = _short_letters(inv.flags)
    silent = "s" in letters or "--silent" in inv.flags
    remote_name = "O" in letters or "--remote-name" in inv.flags
    output_name = _option_value(inv.tokens, "-o") or _option_value(inv.tokens, "--output")

    rng = ctx.rng
    fs = ctx.filesystem
    out: List[str] = []
    for url in urls:
        ctx.report_download(url, "curl")
        size = rng.randint(8000, 64000)
        if output_name == "-" or not (remote_name or output_name):
            if not silent:
                out.append(_CURL_BINARY_WARNING.rstrip("\n"))
            continue
        filename = output_name or _remote_name(url, "")
        if not filename:
            out.append("curl: Remote file name has no length!")
            continue
        try:
            fs.write_file(filename, _payload(size), mode=0o644, owner=ctx.username)
        except (PathNotFound, NotADirectory, NotAFile):
            out.append(f"curl: (23) Failed writing body (0 != {min(size, 16384)})")
            continue
        if not silent:
            kb = size // 1024
            rate = rng.randint(200, 900)
            out += [
                "  % Total    % Received % Xferd  Average Speed   Time    Time     Time  Current",
                "                                 Dload  Upload   Total   Spent    Left  Speed",
                f"100 {kb:>4}k  100 {kb:>4}k    0     0   {rate}k      0 --:--:-- --:--:-- --:--:--  {rate}k",
            ]
    return _lines(out)


# ---------- Dispatch ----------

COMMAND_TABLE: Mapping[str, Handler] = MappingProxyType(
    {
        # Identity & privileges
        "whoami": _handle_whoami,
        "id": _handle_id,
        "sudo": _handle_sudo,
        # System information
        "uname": _handle_uname,
        "hostname": _handle_hostname,
        "uptime": _handle_uptime,
        "date": _handle_date,
        "nproc": _handle_nproc,
        "w": _handle_w,
        "lscpu": _handle_lscpu,
        # VM detection probes
        "systemd-detect-virt": _handle_systemd_detect_virt,
        "dmidecode": _handle_dmidecode,
        "lspci": _handle_lspci,
        "dmesg": _handle_dmesg,
        # Filesystem
        "pwd": _handle_pwd,
        "cd": _handle_cd,
        "ls": _handle_ls,
        "cat": _handle_cat,
        "echo": _handle_echo,
        "touch": _handle_touch,
        "mkdir": _handle_mkdir,
        "rm": _handle_rm,
        "chmod": _handle_chmod,
        "find": _handle_find,
        "grep": _handle_grep,
        "which": _handle_which,
        # Network
        "ifconfig": _handle_ifconfig,
        "ip": _handle_ip,
        "netstat": _handle_netstat,
        "ss": _handle_ss,
        "ping": _handle_ping,
        # Processes & resources
        "ps": _handle_ps,
        "top": _handle_top,
        "free": _handle_free,
        "df": _handle_df,
        # Downloads
        "wget": _handle_wget,
        "curl": _handle_curl,
        # Shell & session
        "history": _handle_history,
        "clear": _handle_clear,
        "env": _handle_env,
        "printenv": _handle_env,
        "export": _handle_export,
        "sleep": _handle_sleep,
        "sh": _handle_shell,
        "bash": _handle_shell,
        "exit": _handle_exit,
        "logout": _handle_exit,
    }
)


def _run_path(invocation: CommandInvocation, ctx: ShellContext) -> Response:
    """Run a command named by path, such as ``/usr/bin/wget`` or ``./bot``."""
    path = invocation.name
    try:
        node = ctx.filesystem.get(path)
    except PathNotFound:
        return f"bash: {path}: No such file or directory\n"
    if node.is_dir:
        return f"bash: {path}: Is a directory\n"
    if not (node.mode & 0o111) or not _can_enter(node, ctx):
        return f"bash: {path}: Permission denied\n"
    if is_program(node):
        handler = COMMAND_TABLE.get(node.name)
        if handler is None:
            return ""
        return handler(replace(invocation, name=node.name), ctx)
    if node.read().startswith("\x7fELF"):
        return f"bash: {path}: cannot execute binary file: Exec format error\n"
    return ""


def dispatch(invocation: CommandInvocation, ctx: ShellContext) -> Response:
    """Run one parsed command against the fixed command table."""
    if "/" in invocation.name:
        return _run_path(invocation, ctx)
    handler = COMMAND_TABLE.get(invocation.command)
    if handler is None:
        return command_not_found(invocation.name)
    return handler(invocation, ctx)


def _failed(invocation: CommandInvocation, output: str) -> bool:
    """Best guess at a non-zero exit status from the text a command printed."""
    return output.startswith(("bash: ", "sudo: ", f"{invocation.name}: ", f"{invocation.command}: "))


def run_line(line: str, ctx: ShellContext) -> Response:
    """Run every command of a line joined by ``;``, ``&&``, ``||`` or ``|``.

    ``&&`` and ``||`` follow the previous command's success, and a pipe
    hands the previous output to the next command instead of printing it.
    """
    outputs: List[str] = []
    failed = False
    for operator, segment in split_command_line(line):
        if (operator == "&&" and failed) or (operator == "||" and not failed):
            continue
        invocation = parse_command(segment)
        if invocation is None:
            continue
        stdin = None
        if operator == "|":
            stdin = outputs.pop() if outputs else ""
        result = dispatch(invocation, replace(ctx, stdin=stdin) if stdin is not None else ctx)
        if result is EXIT_SENTINEL:
            return EXIT_SENTINEL
        failed = _failed(invocation, result)
        outputs.append(result)
    return "".join(outputs)


def is_known_command(line: str) -> bool:
    """True if every command of the line is in the command table."""
    names = []
    for _, segment in split_command_line(line):
        invocation = parse_command(segment)
        if invocation is not None:
            names.append(basename(invocation.command) if "/" in invocation.name else invocation.command)
    return bool(names) and all(name in COMMAND_TABLE for name in names)


def login_banner(persona: Persona, rng: random.Random) -> str:
    """Text printed once when an interactive shell starts."""
    last = datetime.now() - timedelta(hours=rng.randint(2, 72), minutes=rng.randint(0, 59))
    last_from = f"192.168.1.{rng.randint(2, 40)}"
    last_line = f"Last login: {last.strftime('%a %b %d %H:%M:%S %Y')} from {last_from}\n"
    if persona.os_release.startswith('NAME="Ubuntu"'):
        return (
            f"Welcome to {persona.os_pretty_name} (GNU/Linux {persona.kernel_release} {persona.architecture})\n"
            "\n"
            " * Documentation:  https://help.ubuntu.com\n"
            " * Management:     https://landscape.canonical.com\n"
            " * Support:        https://ubuntu.com/advantage\n"
            "\n" + last_line
        )
    if "OpenWrt" in persona.os_pretty_name:
        return (
            "\n\nBusyBox v1.30.1 () built-in shell (ash)\n\n"
            "  _______                     ________        __\n"
            " |       |.-----.-----.-----.|  |  |  |.----.|  |_\n"
            " |   -   ||  _  |  -__|     ||  |  |  ||   _||   _|\n"
            " |_______||   __|_____|__|__||________||__|  |____|\n"
            "          |__| W I R E L E S S   F R E E D O M\n"
            " -----------------------------------------------------\n"
            f" {persona.os_pretty_name}, r11306-c4a6851c72\n"
            " -----------------------------------------------------\n"
        )
    return (
        f"{persona.kernel.rsplit(' GNU/Linux', 1)[0]}\n"
        "\n"
        "The programs included with the Debian GNU/Linux system are free software;\n"
        "the exact distribution terms for each program are described in the\n"
        "individual files in /usr/share/doc/*/copyright.\n"
        "\n"
        "Debian GNU/Linux comes with ABSOLUTELY NO WARRANTY, to the extent\n"
        "permitted by applicable law.\n" + last_line
    )


class ShellEmulator:
    """Per-session command interpreter.

    Holds the session's handler context and applies the artificial response
    delay. ``wait`` is called with the delay in seconds; the session passes an
    interruptible wait so closing the session cuts a pending delay short.
    """

    def __init__(
        self,
        persona: Persona,
        filesystem: VirtualFilesystem,
        session: "Session",
        username: Optional[str] = None,
        rng: Optional[random.Random] = None,
        delay: float = 0.0,
        wait: Optional[Callable[[float], object]] = None,
        on_download: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.persona = persona
        self.filesystem = filesystem
        self.session = session
        self.delay = delay
        self._wait = wait or time.sleep
        self.ctx = ShellContext(
            persona=persona,
            filesystem=filesystem,
            session=session,
            username=username or session.username or persona.default_username,
            rng=rng or random.Random(),
            report_download=on_download or _no_download,
        )
        session.env.update(
            {
                "HOME": filesystem.home,
                "USER": self.ctx.username,
                "LOGNAME": self.ctx.username,
                "SHELL": "/bin/bash",
                "PATH": DEFAULT_PATH,
                "PWD": filesystem.cwd,
                "LANG": "en_US.UTF-8",
                "TERM": "xterm-256color",
                "HOSTNAME": persona.hostname,
            }
        )

    @property
    def username(self) -> str:
        return self.ctx.username

    def execute(self, line: str) -> Response:
        """Apply the response delay, record history and run ``line``.

        If the wait reports that the session was closed meanwhile, nothing
        runs and the result is empty.
        """
        line = line.strip()
        if not line:
            return ""
        self.session.history.append(line)
        if self.delay > 0 and self._wait(self.delay):
            return ""
        return run_line(line, self.ctx)

    def prompt(self) -> str:
        cwd = self.filesystem.cwd
        home = self.filesystem.home
        if cwd == home:
            shown = "~"
        elif home != "/" and cwd.startswith(home + "/"):
            shown = "~" + cwd[len(home):]
        else:
            shown = cwd
        symbol = "#" if self.ctx.is_root else "$"
        return f"{self.ctx.username}@{self.persona.hostname}:{shown}{symbol} "

    def banner(self) -> str:
        return login_banner(self.persona, self.ctx.rng)
