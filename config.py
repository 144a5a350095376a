import copy
import json
import logging
import os

logger = logging.getLogger(__name__)

SETTINGS_ENV = "LINA_DRIVE_SETTINGS"
SETTINGS_PATH = "settings.json"

DEFAULTS = {
    "host": {"url": "http://127.0.0.1:8000"},
    "asr": {"endpoint": "/transcribe"},
    "tts": {"endpoint": "/tts/"},
    "http": {"timeout": 10.0, "max_retries": 3, "backoff_factor": 1.0},
    "voice": {
        "language": "auto",
        "restart_delay": 0.3,
        "speech_rate": 1.0,
        "suppress_while_speaking": True,
        "echo_guard": 0.3,
        "silence_duration": 1.0,
        "max_utterance": 8.0,
    },
    "driving": {
        "inactivity_timeout": 15.0,
        "mount_delay": 0.3,
        "settle_delay": 0.5,
        "exit_delay": 1.0,
        "brightness_active": 0.8,
        "brightness_ready": 1.0,
        "brightness_sleep": 0.2,
        "brightness_restore": 0.8,
        "capture_target": "/(tabs)/capture",
        "home_target": "/(tabs)",
    },
    "sounds": {"pulse": "sounds/pulse.wav"},
}

def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged

class Config:
    _config = None

    @classmethod
    def get_config(cls):
        if cls._config is None:
            cls.reload_config()
        return cls._config

    @classmethod
    def reload_config(cls, path: str = None):
        path = path or os.environ.get(SETTINGS_ENV, SETTINGS_PATH)
        try:
            with open(path, "r") as f:
                cls._config = _merge(DEFAULTS, json.load(f))
            logger.info("Loaded settings from %s", path)
        except FileNotFoundError:
            logger.warning("Settings file %s not found; using defaults", path)
            cls._config = copy.deepcopy(DEFAULTS)
        return cls._config
