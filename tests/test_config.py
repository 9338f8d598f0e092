from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from datalake.core.config import Settings


def test_defaults_derive_paths_and_queue_names(tmp_path: Path) -> None:
    settings = Settings(state_root=tmp_path / "state")

    assert settings.blob_root == (tmp_path / "state" / "blobs").resolve()
    assert settings.blob_root.is_dir()
    assert settings.effective_database_url == f"sqlite:///{(tmp_path / 'state').resolve().as_posix()}/datalake.sqlite3"
    assert settings.queue_name == "file.processing.queue"
    assert settings.effective_dead_letter_queue_name == "file.processing.queue.dead-letter"
    assert settings.job_status_ttl_seconds == 3600
    assert settings.default_user_id == "anonymous"
    assert settings.default_table_name == "default_table"


@pytest.mark.parametrize("state_root", ["relative/state", "~/state", "/tmp/$USER/state"])
def test_unsafe_state_root_is_rejected(state_root: str) -> None:
    with pytest.raises(ValidationError):
        Settings(state_root=state_root)


def test_blob_root_must_live_under_state_root(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(state_root=tmp_path / "state", blob_root=tmp_path / "elsewhere")


def test_table_write_mode_is_normalized_and_validated(tmp_path: Path) -> None:
    assert Settings(state_root=tmp_path / "state", table_write_mode=" APPEND ").table_write_mode == "append"
    with pytest.raises(ValidationError):
        Settings(state_root=tmp_path / "state", table_write_mode="upsert")


def test_dead_letter_queue_cannot_be_the_work_queue(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(state_root=tmp_path / "state", dead_letter_queue_name="file.processing.queue")


def test_retry_ceiling_must_cover_base_delay(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(state_root=tmp_path / "state", worker_retry_base_seconds=60, worker_retry_max_seconds=10)
