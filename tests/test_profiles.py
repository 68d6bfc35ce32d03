"""Tests for device personas."""

import pytest

from sshmon.profiles import DEFAULT_PROFILE, PROFILES, get_persona, list_profiles


class TestProfiles:
    """Tests for the persona registry."""

    def test_three_personas(self):
        assert list_profiles() == ("raspberry-pi", "ubuntu-server", "generic-iot")

    def test_lookup(self):
        assert get_persona("ubuntu-server").architecture == "x86_64"

    @pytest.mark.parametrize("name", [None, "", "commodore-64"])
    def test_unknown_falls_back_to_default(self, name):
        assert get_persona(name) is PROFILES[DEFAULT_PROFILE]

    @pytest.mark.parametrize("name", list(PROFILES))
    def test_kernel_mentions_hostname_and_arch(self, name):
        persona = PROFILES[name]
        assert persona.kernel.split()[1] == persona.hostname
        assert persona.architecture in persona.kernel
        assert persona.kernel.endswith("GNU/Linux")

    def test_kernel_release_and_version(self):
        pi = PROFILES["raspberry-pi"]
        assert pi.kernel_release == "5.10.63-v7l+"
        assert pi.kernel_version == "#1459 SMP Wed Oct 6 16:41:57 BST 2021"
        ubuntu = PROFILES["ubuntu-server"]
        assert ubuntu.kernel_version == "#94-Ubuntu SMP Thu Aug 26 20:27:37 UTC 2021"

    def test_pci_bus_only_on_x86(self):
        assert PROFILES["ubuntu-server"].has_pci_bus
        assert PROFILES["ubuntu-server"].pci_devices
        assert not PROFILES["raspberry-pi"].has_pci_bus
        assert not PROFILES["generic-iot"].has_pci_bus

    def test_personas_are_frozen(self):
        with pytest.raises(AttributeError):
            PROFILES["raspberry-pi"].hostname = "changed"
