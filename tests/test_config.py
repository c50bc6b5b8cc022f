from pathlib import Path

import academy.config as config_module
from academy.config import AppConfig


def test_storage_root_falls_back_when_preferred_is_unusable(
    tmp_path: Path, monkeypatch
) -> None:
    home_dir = tmp_path / "home"
    monkeypatch.setattr(config_module.Path, "home", lambda: home_dir)

    preferred_storage = tmp_path / "storage"
    preferred_storage.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "state_file": "storage/console_state.db",
        },
        base_path=tmp_path,
    )

    expected_storage = (home_dir / ".academy_console" / "storage").resolve()
    assert config.storage_root == expected_storage
    assert config.state_file == (expected_storage / "console_state.db").resolve()
    assert expected_storage.exists()


def test_environment_overrides_backend_settings(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("ACADEMY_API_BASE_URL", "https://api.example.com/")
    monkeypatch.setenv("ACADEMY_REQUEST_TIMEOUT", "5")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "state_file": "storage/console_state.db",
            "api_base_url": "http://localhost:5000",
            "request_timeout": 30,
        },
        base_path=tmp_path,
    )

    assert config.api_base_url == "https://api.example.com"
    assert config.request_timeout == 5.0


def test_invalid_numbers_fall_back_to_defaults(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("ACADEMY_REQUEST_TIMEOUT", raising=False)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "state_file": "storage/console_state.db",
            "request_timeout": "soon",
            "progress_interval": -4,
        },
        base_path=tmp_path,
    )

    assert config.request_timeout == config_module.DEFAULT_REQUEST_TIMEOUT
    assert config.progress_interval == config_module.DEFAULT_PROGRESS_INTERVAL
    assert config.settings_file == (config.storage_root / "settings.json").resolve()

