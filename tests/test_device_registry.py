import pytest

from device_registry import DeviceRegistry


class TestDeviceRegistry:

    @pytest.mark.asyncio
    async def test_empty_without_file(self, tmp_path):
        assert await DeviceRegistry(tmp_path / "devices.toml").load() == []

    @pytest.mark.asyncio
    async def test_add_uses_default_name(self, tmp_path):
        registry = DeviceRegistry(tmp_path / "devices.toml")
        device = await registry.add_device("192.168.1.20")
        assert device.id == "192.168.1.20:8080"
        assert device.name == "TV at 192.168.1.20"
        assert registry.get(device.id) is device

    @pytest.mark.asyncio
    async def test_devices_survive_reload(self, tmp_path):
        registry = DeviceRegistry(tmp_path / "devices.toml")
        await registry.add_device("192.168.1.20", name="Court 1")
        await registry.add_device("192.168.1.21", 9000, "Court 2")

        devices = await DeviceRegistry(tmp_path / "devices.toml").load()
        assert [(d.name, d.address, d.port) for d in devices] == [
            ("Court 1", "192.168.1.20", 8080),
            ("Court 2", "192.168.1.21", 9000),
        ]
        assert not any(d.connected for d in devices)

    @pytest.mark.asyncio
    async def test_adding_twice_renames(self, tmp_path):
        registry = DeviceRegistry(tmp_path / "devices.toml")
        first = await registry.add_device("192.168.1.20")
        second = await registry.add_device("192.168.1.20", name="Court 1")
        assert second is first
        assert len(registry.devices()) == 1
        assert first.name == "Court 1"

    @pytest.mark.asyncio
    async def test_remove(self, tmp_path):
        registry = DeviceRegistry(tmp_path / "devices.toml")
        device = await registry.add_device("192.168.1.20")
        assert await registry.remove_device(device.id)
        assert not await registry.remove_device(device.id)
        assert await DeviceRegistry(tmp_path / "devices.toml").load() == []

    @pytest.mark.asyncio
    async def test_add_discovered_skips_known(self, tmp_path):
        registry = DeviceRegistry(tmp_path / "devices.toml")
        await registry.add_device("192.168.1.20", name="Court 1")
        assert await registry.add_discovered("192.168.1.20", 8080, "Squash Timer - Court 1") is None

        found = await registry.add_discovered("192.168.1.30", 8080, "Court 3")
        assert found.name == "Court 3"

    @pytest.mark.asyncio
    async def test_invalid_entries_are_skipped(self, tmp_path):
        path = tmp_path / "devices.toml"
        path.write_text(
            '[[devices]]\naddress = "192.168.1.20"\n\n'
            '[[devices]]\nname = "no address"\n\n'
            '[[devices]]\naddress = "192.168.1.22"\nport = 0\n'
        )
        devices = await DeviceRegistry(path).load()
        assert [d.address for d in devices] == ["192.168.1.20"]
