import os
from pathlib import Path
from unittest.mock import patch

import pytest

from src.config_utils import ConfigError, load_config, load_settings

REQUIRED_ENV = {
    "DATA_PATH": "/srv/channel",
    "CHANNEL_URL": "https://www.youtube.com/@example",
    "WHISPER_MODEL_PATH": "/models/ggml-base.en.bin",
}


def test_load_config_missing_file_is_empty(tmp_path: Path):
    assert load_config(tmp_path / "missing.yaml") == {}


def test_load_config_rejects_non_mapping(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(path)


def test_load_config_rejects_invalid_yaml(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("data_path: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(path)


def test_settings_from_environment_with_defaults(tmp_path: Path):
    settings = load_settings(tmp_path / "missing.yaml", environ=REQUIRED_ENV)

    assert settings.data_path == Path("/srv/channel")
    assert settings.channel_url == "https://www.youtube.com/@example"
    assert settings.download_workers == 3
    assert settings.transcribe_workers == 2
    assert settings.metadata_workers == 8
    assert settings.meilisearch_url == "http://localhost:7700"
    assert settings.meilisearch_api_key is None
    assert settings.index_name == "videos"
    assert settings.index_batch_size == 100
    assert settings.index_flush_interval == 5.0


def test_environment_overrides_yaml(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "download_workers: 5\n"
        "transcribe_workers: 4\n"
        "meilisearch_url: http://yaml:7700\n"
    )
    environ = {**REQUIRED_ENV, "MAX_DOWNLOAD_PROCESS_WORKERS": "7"}

    settings = load_settings(path, environ=environ)

    assert settings.download_workers == 7
    assert settings.transcribe_workers == 4
    assert settings.meilisearch_url == "http://yaml:7700"


def test_empty_environment_values_are_ignored(tmp_path: Path):
    environ = {**REQUIRED_ENV, "MEILISEARCH_API_KEY": ""}
    settings = load_settings(tmp_path / "x.yaml", environ=environ)
    assert settings.meilisearch_api_key is None


def test_missing_required_setting_names_variable(tmp_path: Path):
    environ = dict(REQUIRED_ENV)
    del environ["CHANNEL_URL"]

    with pytest.raises(ConfigError, match="CHANNEL_URL"):
        load_settings(tmp_path / "missing.yaml", environ=environ)


@pytest.mark.parametrize(
    "variable, value",
    [
        ("MAX_DOWNLOAD_PROCESS_WORKERS", "0"),
        ("MAX_TRANSCRIBE_WORKERS", "many"),
        ("INDEX_BATCH_SIZE", "-1"),
        ("CHANNEL_URL", "   "),
    ],
)
def test_invalid_values_raise_config_error(tmp_path: Path, variable, value):
    with pytest.raises(ConfigError):
        load_settings(
            tmp_path / "missing.yaml", environ={**REQUIRED_ENV, variable: value}
        )


def test_zero_tool_timeout_disables_deadline(tmp_path: Path):
    environ = {**REQUIRED_ENV, "TOOL_TIMEOUT": "0"}
    assert load_settings(tmp_path / "x.yaml", environ=environ).tool_timeout is None


def test_dotenv_file_is_loaded(tmp_path: Path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "".join(f"{key}={value}\n" for key, value in REQUIRED_ENV.items())
    )

    with patch.dict(os.environ):
        for variable in REQUIRED_ENV:
            os.environ.pop(variable, None)
        settings = load_settings(tmp_path / "missing.yaml", env_file=env_file)

    assert settings.channel_url == REQUIRED_ENV["CHANNEL_URL"]
