import platform
import sys

from yt_dlp.version import __version__ as ytdlp_version

from config.settings import APP_VERSION


def get_runtime_info():
    return {
        "app_version": APP_VERSION,
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "platform": platform.platform(),
    }
