import os
import tempfile
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "logs": Path("/logs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

LOG_DIR = Path(os.environ.get("MEDIA_MERGE_LOG_DIR", _DEFAULTS["logs"])).resolve()
# Scratch space shared by the merge engine (writer) and the janitor (deleter).
ARTIFACT_DIR = Path(
    os.environ.get("MEDIA_MERGE_ARTIFACT_DIR", Path(tempfile.gettempdir()) / "yt-merge")
).resolve()


@dataclass(frozen=True)
class StoragePaths:
    log_dir: str
    artifact_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    try:
        return os.path.commonpath([real, base]) == base
    except ValueError:
        return False


def build_storage_paths(artifact_dir=None, log_dir=None):
    artifact = Path(artifact_dir).resolve() if artifact_dir else ARTIFACT_DIR
    logs = Path(log_dir).resolve() if log_dir else LOG_DIR

    # Ensure required directories exist
    for d in (artifact, logs):
        ensure_dir(d)

    return StoragePaths(
        log_dir=str(logs),
        artifact_dir=str(artifact),
    )
