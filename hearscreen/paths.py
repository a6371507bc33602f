import os
import platform

APP_NAME = "HearScreen"


def _platform_base() -> str:
    system = platform.system().lower()
    if "windows" in system:
        return os.environ.get("LOCALAPPDATA") or os.environ.get("APPDATA") or os.path.expanduser("~")
    if "darwin" in system:
        return os.path.expanduser("~/Library/Application Support")
    return os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")


def get_app_data_dir(create=True):
    """Per-user data directory; HEARSCREEN_HOME overrides the platform default."""
    path = os.environ.get("HEARSCREEN_HOME") or os.path.join(_platform_base(), APP_NAME)
    if create:
        os.makedirs(path, exist_ok=True)
    return path


def path_settings():
    return os.path.join(get_app_data_dir(), "settings.json")


def path_records():
    return os.path.join(get_app_data_dir(), "records")


def get_log_file_path() -> str:
    return os.path.join(get_app_data_dir(), "hearscreen.log")
