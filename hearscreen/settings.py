from __future__ import annotations
from typing import Any, Dict, Optional
import copy
import json
import logging
import os

from .paths import path_settings

log = logging.getLogger('hearscreen.settings')

DEFAULT_SETTINGS: Dict[str, Any] = {
    'start_level_db': 30,
    'min_level_db': 0,
    'max_level_db': 100,
    'max_trials': 8,
    'skip_level_db': 100,
    'tone_duration_ms': 500,
    'response_delay_ms': 800,
    # 1 kHz reference first
    'frequency_order': [1000, 2000, 4000, 500],
    'sample_rate': 48000,
    'left_channel_index': 0,
    'right_channel_index': 1,
    'output_device': None,
    'warble': False,
    'log_level': 'INFO',
    'last_calibration_id': None,
}


def default_settings() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_SETTINGS)


def _check(settings: Dict[str, Any]) -> None:
    if not settings['frequency_order']:
        raise ValueError("settings: 'frequency_order' must list at least one frequency")
    if settings['min_level_db'] > settings['max_level_db']:
        raise ValueError("settings: 'min_level_db' is above 'max_level_db'")
    if int(settings['max_trials']) < 1:
        raise ValueError("settings: 'max_trials' must be at least 1")


def load_settings(path: Optional[str] = None) -> Dict[str, Any]:
    """Read the settings file, filling in defaults for missing keys.

    A missing or unreadable file gives the defaults.
    """
    path = path or path_settings()
    if not os.path.exists(path):
        return default_settings()
    try:
        with open(path, 'r', encoding='utf-8') as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError):
        log.warning("Settings file %s unreadable, using defaults", path, exc_info=True)
        return default_settings()
    if not isinstance(data, dict):
        log.warning("Settings file %s is not a JSON object, using defaults", path)
        return default_settings()
    for key, value in DEFAULT_SETTINGS.items():
        data.setdefault(key, copy.deepcopy(value))
    data['frequency_order'] = [int(f) for f in data['frequency_order']]
    _check(data)
    return data


def save_settings(settings: Dict[str, Any], path: Optional[str] = None) -> str:
    path = path or path_settings()
    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, 'w', encoding='utf-8') as handle:
        json.dump(settings, handle, ensure_ascii=False, indent=2)
    os.replace(tmp_path, path)
    return path
