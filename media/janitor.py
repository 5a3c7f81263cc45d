"""Deletion of merge artifacts: delayed per-file cleanup plus an age-based sweep."""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import (
    ARTIFACT_CLEANUP_DELAY_SECONDS,
    ARTIFACT_MAX_AGE_SECONDS,
    ARTIFACT_SWEEP_INTERVAL_SECONDS,
    MERGE_TOKEN_PURGE_INTERVAL_SECONDS,
)
from engine.paths import is_within_base

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "artifact_sweep"
TOKEN_PURGE_JOB_ID = "merge_token_purge"
CLEANUP_JOB_ID = "artifact_cleanup"


class TempFileJanitor:
    """Owns deletion of files under ``artifact_dir``. Never raises."""

    def __init__(
        self,
        artifact_dir,
        *,
        max_age_seconds: float = ARTIFACT_MAX_AGE_SECONDS,
        cleanup_delay_seconds: float = ARTIFACT_CLEANUP_DELAY_SECONDS,
        scheduler: BackgroundScheduler | None = None,
        clock=time.time,
    ):
        self.artifact_dir = Path(artifact_dir)
        self.max_age_seconds = float(max_age_seconds)
        self.cleanup_delay_seconds = float(cleanup_delay_seconds)
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._clock = clock

    @property
    def running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def cleanup(self, path) -> bool:
        if not path:
            return False
        if not is_within_base(path, self.artifact_dir):
            logger.warning(f"Refusing to delete file outside artifact dir: {path}")
            return False
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.info(f"Artifact already removed: {path}")
            return False
        except OSError as exc:
            logger.error(f"Failed to delete artifact {path}: {exc}")
            return False
        logger.info(f"Deleted artifact: {path}")
        return True

    def sweep(self) -> int:
        """Delete artifacts older than ``max_age_seconds``; return how many went."""
        try:
            entries = list(os.scandir(self.artifact_dir))
        except FileNotFoundError:
            return 0
        except OSError as exc:
            logger.error(f"Artifact sweep could not list {self.artifact_dir}: {exc}")
            return 0

        cutoff = self._clock() - self.max_age_seconds
        removed = 0
        for entry in entries:
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                if entry.stat(follow_symlinks=False).st_mtime >= cutoff:
                    continue
                os.remove(entry.path)
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error(f"Artifact sweep failed for {entry.path}: {exc}")
        if removed:
            logger.info(f"Artifact sweep removed {removed} file(s) from {self.artifact_dir}")
        return removed

    def start(self, interval_seconds: float = ARTIFACT_SWEEP_INTERVAL_SECONDS, *, token_store=None):
        """Sweep once now, then periodically; optionally purge expired merge tokens too."""
        self.sweep()
        self.scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=max(1, int(interval_seconds))),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        if token_store is not None:
            self.scheduler.add_job(
                token_store.purge_expired,
                trigger=IntervalTrigger(seconds=max(1, int(MERGE_TOKEN_PURGE_INTERVAL_SECONDS))),
                id=TOKEN_PURGE_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=30,
            )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(
            f"Artifact janitor active dir={self.artifact_dir} "
            f"max_age={self.max_age_seconds:g}s interval={interval_seconds}s"
        )

    def schedule_cleanup(self, path) -> None:
        """Delete ``path`` shortly after its consumer is done with it."""
        if not self.running or self.cleanup_delay_seconds <= 0:
            self.cleanup(path)
            return
        run_date = datetime.now(timezone.utc) + timedelta(seconds=self.cleanup_delay_seconds)
        try:
            self.scheduler.add_job(
                self.cleanup,
                trigger=DateTrigger(run_date=run_date),
                args=[str(path)],
                id=f"{CLEANUP_JOB_ID}_{uuid4()}",
                replace_existing=False,
                misfire_grace_time=60,
            )
        except Exception as exc:
            logger.error(f"Could not schedule cleanup for {path}: {exc}")
            self.cleanup(path)

    def shutdown(self) -> None:
        if self.running:
            self.scheduler.shutdown(wait=False)
