from livecall.config import Settings


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("LIVECALL_SIGNALING_URL", "ws://server:5000/ws")
    monkeypatch.setenv("LIVECALL_LOGLEVEL", "DEBUG")
    monkeypatch.setenv("LIVECALL_ROOM_CAPACITY", "2")
    monkeypatch.setenv("LIVECALL_AUTO_RECONNECT", "no")
    settings = Settings.from_env()
    assert settings.signaling_url == "ws://server:5000/ws"
    assert settings.log_level == "DEBUG"
    assert settings.room_capacity == 2
    assert settings.auto_reconnect is False


def test_defaults_are_valid(monkeypatch):
    for name in ("LIVECALL_PORT", "LIVECALL_TURN_URL", "LIVECALL_TURN_USER", "LIVECALL_TURN_PASS"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.port == 5000
    assert settings.validate() == []
    assert settings.turn_enabled is False
    assert settings.camera


def test_validate_reports_problems():
    settings = Settings(port=0, room_capacity=-1, recording_timeslice=0, turn_url="turn:relay.example.org")
    errors = settings.validate()
    assert any("LIVECALL_PORT" in e for e in errors)
    assert any("LIVECALL_ROOM_CAPACITY" in e for e in errors)
    assert any("LIVECALL_RECORDING_TIMESLICE" in e for e in errors)
    assert any("LIVECALL_TURN_URL" in e for e in errors)


def test_turn_enabled_needs_all_credentials():
    assert Settings(turn_url="turn:x", turn_user="u", turn_pass="p").turn_enabled
    assert not Settings(turn_url="turn:x", turn_user="u").turn_enabled
