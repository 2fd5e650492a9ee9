import asyncio

import pytest

from config import Config, ConfigurationLoadError
from room_data import RoomSettings


def load(location, required=True) -> Config:
    config = Config(location, required=required)
    asyncio.run(config.initialize())
    return config


def test_defaults_when_optional_file_is_missing(tmp_path):
    config = load(tmp_path / "absent.toml", required=False)
    assert config.settings() == RoomSettings()
    assert config["transport"]["service_type"] == "_tablemesh._tcp.local."
    assert config["session"]["store_path"] == "./tablemesh-session.toml"


def test_missing_required_file(tmp_path):
    with pytest.raises(ConfigurationLoadError):
        load(tmp_path / "absent.toml")


def test_values_are_read(tmp_path):
    location = tmp_path / "tablemesh.toml"
    location.write_text(
        '[room]\n'
        'address_prefix = "poker-night"\n'
        'max_participants = 6\n'
        '\n'
        '[migration]\n'
        'reconnect_attempts = 3\n'
        'attempt_timeout_sec = 1.5\n'
        '\n'
        '[transport]\n'
        'advertise_host = "192.168.1.35"\n'
    )
    config = load(location)
    settings = config.settings()
    assert settings.address_prefix == "poker-night"
    assert settings.host_address("xyz23") == "poker-night-XYZ23"
    assert settings.max_participants == 6
    assert settings.reconnect_attempts == 3
    assert settings.attempt_timeout == 1.5
    assert settings.reconnect_interval == 1.0
    assert settings.grace_period == 300
    assert config["transport"]["advertise_host"] == "192.168.1.35"


@pytest.mark.parametrize("content", [
    '[room]\nmax_participants = "ten"\n',
    '[room]\naddress_prefix = "has spaces"\n',
    '[migration]\nreconnect_attempts = 0\n',
    '[transport]\nservice_type = "tablemesh"\n',
    '[unknown]\nkey = 1\n',
    '[room\nbroken',
])
def test_invalid_configuration(tmp_path, content):
    location = tmp_path / "tablemesh.toml"
    location.write_text(content)
    with pytest.raises(ConfigurationLoadError):
        load(location)
