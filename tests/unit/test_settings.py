import pytest
from pydantic import ValidationError

from tierup.CONFIG.settings import Settings


def test_defaults():
    settings = Settings.from_env(environ={})
    assert settings.state_dir == ".tierup"
    assert settings.restart_base_delay == 1.0
    assert settings.restart_max_delay == 300.0
    assert settings.restart_min_interval == 1.0
    assert settings.stop_timeout == 10.0
    assert settings.dependency_timeout is None
    assert settings.log_level == "INFO"


def test_from_environ():
    settings = Settings.from_env(environ={
        'TIERUP_STATE_DIR': '/var/lib/tierup',
        'TIERUP_RESTART_BASE_DELAY': '0.5',
        'TIERUP_DEPENDENCY_TIMEOUT': '120',
        'TIERUP_LOG_LEVEL': 'debug',
        'TIERUP_STOP_TIMEOUT': '  ',
        'UNRELATED': 'x',
    })
    assert settings.state_dir == '/var/lib/tierup'
    assert settings.restart_base_delay == 0.5
    assert settings.dependency_timeout == 120.0
    assert settings.log_level == 'debug'
    assert settings.stop_timeout == 10.0


def test_invalid_value():
    with pytest.raises(ValidationError):
        Settings.from_env(environ={'TIERUP_STOP_TIMEOUT': '0'})
    with pytest.raises(ValidationError):
        Settings.from_env(environ={'TIERUP_RESTART_MAX_DELAY': 'forever'})


def test_env_file(tmp_path, monkeypatch):
    env_file = tmp_path / "tierup.env"
    env_file.write_text("TIERUP_RESTART_MIN_INTERVAL=3\nTIERUP_STOP_TIMEOUT=7\n")

    # register both variables with monkeypatch so the values loaded from the file are undone
    for name in ("TIERUP_RESTART_MIN_INTERVAL", "TIERUP_STOP_TIMEOUT"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.setenv("TIERUP_STOP_TIMEOUT", "4")

    settings = Settings.from_env(str(env_file))
    assert settings.restart_min_interval == 3.0
    assert settings.stop_timeout == 4.0
