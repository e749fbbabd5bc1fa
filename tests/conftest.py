from pathlib import Path

import pytest

from src.state_store import DataLayout, init_data_dir


@pytest.fixture
def layout(tmp_path: Path) -> DataLayout:
    data_layout = DataLayout(tmp_path / "data")
    init_data_dir(data_layout)
    return data_layout


def write_artifact(path: Path, content: str = "data") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def fake_download(video_id, output, timeout=None):
    write_artifact(output, "mp3")
    return output


def fake_transcode(input_path, output, timeout=None):
    write_artifact(output, "wav")
    return output


def fake_transcribe(input_path, output, model_path, timeout=None):
    write_artifact(output, f"1\n00:00:00,000 --> 00:00:02,000\n{output.stem}\n")
    return output
