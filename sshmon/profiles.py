"""Device personas presented by the sshmon fake shell.

A persona is the static bundle of identity facts (hostname, kernel,
architecture, network identity, hardware) every command and generated
file draws from. Exactly one persona is active per process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

LOGGER = logging.getLogger(__name__)

DEFAULT_PROFILE = "raspberry-pi"

# Architectures that have a PCI bus (and therefore lspci/dmidecode).
PCI_ARCHITECTURES = ("x86_64", "i686")


@dataclass(frozen=True)
class Persona:
    """Immutable identity of the emulated device."""

    name: str
    hostname: str
    default_username: str
    home_user: str
    architecture: str
    kernel: str
    ip_address: str
    mac_address: str
    os_pretty_name: str
    os_release: str
    cpu_model: str
    cpu_cores: int
    hardware: str
    model: str
    vendor: str
    mem_total_kb: int
    swap_total_kb: int
    disk_root_kb: int
    root_device: str
    boot_device: Optional[str] = None
    bios_vendor: Optional[str] = None
    pci_devices: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def kernel_release(self) -> str:
        """Release token of the kernel string (what ``uname -r`` prints)."""
        return self.kernel.split()[2]

    @property
    def kernel_version(self) -> str:
        """Build/version part of the kernel string (what ``uname -v`` prints)."""
        tokens = self.kernel.split()[3:]
        if tokens and tokens[-1] == "GNU/Linux":
            tokens = tokens[:-1]
        while tokens and tokens[-1] == self.architecture:
            tokens = tokens[:-1]
        return " ".join(tokens)

    @property
    def has_pci_bus(self) -> bool:
        return self.architecture in PCI_ARCHITECTURES

    @property
    def hardware_id(self) -> str:
        return self.mac_address


_RASPBIAN_RELEASE = """PRETTY_NAME="Raspbian GNU/Linux 11 (bullseye)"
NAME="Raspbian GNU/Linux"
VERSION_ID="11"
VERSION="11 (bullseye)"
VERSION_CODENAME=bullseye
ID=raspbian
ID_LIKE=debian
HOME_URL="http://www.raspbian.org/"
SUPPORT_URL="http://www.raspbian.org/RaspbianForums"
BUG_REPORT_URL="http://www.raspbian.org/RaspbianBugs"
"""

_UBUNTU_RELEASE = """NAME="Ubuntu"
VERSION="20.04.3 LTS (Focal Fossa)"
ID=ubuntu
ID_LIKE=debian
PRETTY_NAME="Ubuntu 20.04.3 LTS"
VERSION_ID="20.04"
HOME_URL="https://www.ubuntu.com/"
SUPPORT_URL="https://help.ubuntu.com/"
BUG_REPORT_URL="https://bugs.launchpad.net/ubuntu/"
PRIVACY_POLICY_URL="https://www.ubuntu.com/legal/terms-and-policies/privacy-policy"
VERSION_CODENAME=focal
UBUNTU_CODENAME=focal
"""

_OPENWRT_RELEASE = """NAME="OpenWrt"
VERSION="19.07.7"
ID="openwrt"
ID_LIKE="lede openwrt"
PRETTY_NAME="OpenWrt 19.07.7"
VERSION_ID="19.07.7"
HOME_URL="https://openwrt.org/"
BUG_URL="https://bugs.openwrt.org/"
SUPPORT_URL="https://forum.openwrt.org/"
BUILD_ID="r11306-c4a6851c72"
OPENWRT_BOARD="ramips/mt7621"
OPENWRT_ARCH="mipsel_24kc"
"""

PROFILES: Dict[str, Persona] = {
    "raspberry-pi": Persona(
        name="raspberry-pi",
        hostname="raspberrypi",
        default_username="root",
        home_user="pi",
        architecture="armv7l",
        kernel=(
            "Linux raspberrypi 5.10.63-v7l+ #1459 SMP Wed Oct 6 16:41:57 BST 2021 "
            "armv7l GNU/Linux"
        ),
        ip_address="192.168.1.47",
        mac_address="b8:27:eb:3a:12:34",
        os_pretty_name="Raspbian GNU/Linux 11 (bullseye)",
        os_release=_RASPBIAN_RELEASE,
        cpu_model="ARMv7 Processor rev 4 (v7l)",
        cpu_cores=4,
        hardware="BCM2835",
        model="Raspberry Pi 3 Model B Rev 1.2",
        vendor="Raspberry Pi Foundation",
        mem_total_kb=949248,
        swap_total_kb=102396,
        disk_root_kb=30185472,
        root_device="/dev/root",
        boot_device="/dev/mmcblk0p1",
    ),
    "ubuntu-server": Persona(
        name="ubuntu-server",
        hostname="ubuntu-server",
        default_username="admin",
        home_user="admin",
        architecture="x86_64",
        kernel=(
            "Linux ubuntu-server 5.4.0-84-generic #94-Ubuntu SMP Thu Aug 26 20:27:37 "
            "UTC 2021 x86_64 x86_64 x86_64 GNU/Linux"
        ),
        ip_address="192.168.1.152",
        mac_address="d8:9e:f3:4a:7c:21",
        os_pretty_name="Ubuntu 20.04.3 LTS",
        os_release=_UBUNTU_RELEASE,
        cpu_model="Intel(R) Core(TM) i5-8500 CPU @ 3.00GHz",
        cpu_cores=6,
        hardware="Intel Q370",
        model="OptiPlex 7060",
        vendor="Dell Inc.",
        mem_total_kb=16318412,
        swap_total_kb=2097148,
        disk_root_kb=479152840,
        root_device="/dev/sda2",
        boot_device="/dev/sda1",
        bios_vendor="Dell Inc.",
        pci_devices=(
            "00:00.0 Host bridge: Intel Corporation 8th Gen Core Processor Host Bridge/DRAM Registers (rev 07)",
            "00:02.0 VGA compatible controller: Intel Corporation UHD Graphics 630 (Desktop)",
            "00:14.0 USB controller: Intel Corporation Cannon Lake PCH USB 3.1 xHCI Host Controller (rev 10)",
            "00:14.2 RAM memory: Intel Corporation Cannon Lake PCH Shared SRAM (rev 10)",
            "00:16.0 Communication controller: Intel Corporation Cannon Lake PCH HECI Controller (rev 10)",
            "00:17.0 SATA controller: Intel Corporation Cannon Lake PCH SATA AHCI Controller (rev 10)",
            "00:1f.0 ISA bridge: Intel Corporation Q370 Chipset LPC/eSPI Controller (rev 10)",
            "00:1f.3 Audio device: Intel Corporation Cannon Lake PCH cAVS (rev 10)",
            "00:1f.4 SMBus: Intel Corporation Cannon Lake PCH SMBus Controller (rev 10)",
            "00:1f.5 Serial bus controller [0c80]: Intel Corporation Cannon Lake PCH SPI Controller (rev 10)",
            "00:1f.6 Ethernet controller: Intel Corporation Ethernet Connection (7) I219-LM (rev 10)",
        ),
    ),
    "generic-iot": Persona(
        name="generic-iot",
        hostname="camera01",
        default_username="admin",
        home_user="admin",
        architecture="mips",
        kernel="Linux camera01 4.9.140 #1 SMP PREEMPT Mon Jul 15 10:23:45 CST 2019 mips GNU/Linux",
        ip_address="192.168.1.198",
        mac_address="c0:56:e3:5b:1e:08",
        os_pretty_name="OpenWrt 19.07.7",
        os_release=_OPENWRT_RELEASE,
        cpu_model="MIPS 1004Kc V2.15",
        cpu_cores=2,
        hardware="MediaTek MT7621",
        model="Generic IoT Device",
        vendor="MediaTek",
        mem_total_kb=250880,
        swap_total_kb=0,
        disk_root_kb=14336,
        root_device="/dev/root",
    ),
}


def get_persona(name: Optional[str] = None) -> Persona:
    """Look up a persona by name.

    Unknown or empty names fall back to the default profile so a typo in the
    operator configuration never prevents the honeypot from starting.
    """
    if not name:
        return PROFILES[DEFAULT_PROFILE]
    persona = PROFILES.get(name)
    if persona is None:
        LOGGER.warning(
            "Unknown emulation profile %r, falling back to %s", name, DEFAULT_PROFILE
        )
        return PROFILES[DEFAULT_PROFILE]
    return persona


def list_profiles() -> Tuple[str, ...]:
    """Names of all registered personas."""
    return tuple(PROFILES)
