from __future__ import annotations

import os
import time

from media.janitor import SWEEP_JOB_ID, TOKEN_PURGE_JOB_ID, TempFileJanitor
from engine.merge_tokens import MergeTokenStore


def _touch(path, age_seconds=0.0):
    path.write_bytes(b"x")
    stamp = time.time() - age_seconds
    os.utime(path, (stamp, stamp))
    return path


def test_sweep_removes_only_files_older_than_threshold(tmp_path) -> None:
    old = _touch(tmp_path / "merged_old.mp4", age_seconds=7200)
    fresh = _touch(tmp_path / "merged_new.mp4", age_seconds=60)
    (tmp_path / "subdir").mkdir()
    janitor = TempFileJanitor(tmp_path, max_age_seconds=3600)

    assert janitor.sweep() == 1
    assert not old.exists()
    assert fresh.exists()
    assert (tmp_path / "subdir").is_dir()


def test_sweep_of_missing_directory_is_zero(tmp_path) -> None:
    janitor = TempFileJanitor(tmp_path / "absent")
    assert janitor.sweep() == 0


def test_cleanup_tolerates_missing_file(tmp_path, caplog) -> None:
    janitor = TempFileJanitor(tmp_path)
    target = _touch(tmp_path / "merged_a.mp4")

    assert janitor.cleanup(target) is True
    with caplog.at_level("INFO"):
        assert janitor.cleanup(target) is False
    assert "already removed" in caplog.text


def test_cleanup_refuses_paths_outside_artifact_dir(tmp_path) -> None:
    artifacts = tmp_path / "artifacts"
    artifacts.mkdir()
    outside = _touch(tmp_path / "keep.txt")
    janitor = TempFileJanitor(artifacts)

    assert janitor.cleanup(outside) is False
    assert outside.exists()


def test_schedule_cleanup_is_immediate_without_running_scheduler(tmp_path) -> None:
    janitor = TempFileJanitor(tmp_path, cleanup_delay_seconds=5)
    target = _touch(tmp_path / "merged_b.mp4")

    janitor.schedule_cleanup(str(target))

    assert not target.exists()


def test_start_sweeps_now_and_registers_jobs(tmp_path) -> None:
    stale = _touch(tmp_path / "merged_stale.mp4", age_seconds=10_000)
    janitor = TempFileJanitor(tmp_path, max_age_seconds=3600, cleanup_delay_seconds=0.2)
    try:
        janitor.start(interval_seconds=3600, token_store=MergeTokenStore())
        assert not stale.exists()
        assert janitor.running
        assert janitor.scheduler.get_job(SWEEP_JOB_ID) is not None
        assert janitor.scheduler.get_job(TOKEN_PURGE_JOB_ID) is not None

        target = _touch(tmp_path / "merged_later.mp4")
        janitor.schedule_cleanup(str(target))
        assert target.exists()
        deadline = time.monotonic() + 10
        while target.exists() and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not target.exists()
    finally:
        janitor.shutdown()
    assert not janitor.running
