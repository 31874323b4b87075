"""
Petwatch Configuration Module

Handles loading configuration from:
1. .env file
2. Environment variables
3. Default values

Usage:
    from petwatch.config import config

    interval = config.get_int("PW_CYCLE_INTERVAL_MS", 5000)
    config.set("PW_MODEL", "llava:13b")
    config.save()
"""

__all__ = ["config", "Config", "DEFAULTS", "CONFIG_CATEGORIES"]

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

# Default configuration values
DEFAULTS = {
    # Live session
    "PW_CYCLE_INTERVAL_MS": "5000",    # Period between interpretation ticks
    "PW_LOG_CAPACITY": "100",          # Observations kept in the on-screen log
    "PW_NARRATE_PROVISIONAL": "true",  # Narrate while an identification awaits a name
    "PW_SAVE_THUMBNAIL": "true",       # Keep identification snapshot as thumbnail

    # Camera
    "PW_CAMERA_DEVICE": "0",           # Device index or stream URL
    "PW_CAMERA_OPEN_TIMEOUT": "5",     # Seconds to wait for the first frame
    "PW_SNAPSHOT_QUALITY": "0.8",      # JPEG quality 0.0-1.0

    # AI / LLM
    "PW_LLM_PROVIDER": "ollama",       # ollama, openai
    "PW_MODEL": "llava:7b",
    "PW_OLLAMA_URL": "http://localhost:11434",
    "PW_OPENAI_API_KEY": "",
    "PW_OPENAI_URL": "https://api.openai.com/v1",
    "PW_LLM_TIMEOUT": "30",
    "PW_CLIP_FRAMES": "6",             # Frames sampled from an uploaded clip

    # Voice
    "PW_TTS_ENGINE": "auto",           # auto, espeak, say, pyttsx3
    "PW_TTS_LOCALE": "en-US",
    "PW_TTS_RATE": "1.0",              # Multiplier on PW_TTS_BASE_WPM
    "PW_TTS_BASE_WPM": "160",

    # Storage
    "PW_STORE_PATH": "~/.petwatch/store.json",

    # Logging
    "PW_LOG_LEVEL": "INFO",
    "PW_LOG_FILE": "",
}

# Configuration categories, used when writing a full .env
CONFIG_CATEGORIES = {
    "Live Session": [
        ("PW_CYCLE_INTERVAL_MS", "Cycle Interval (ms)", "Milliseconds between live interpretations"),
        ("PW_LOG_CAPACITY", "Log Capacity", "Observations kept in the live log"),
        ("PW_NARRATE_PROVISIONAL", "Narrate Provisional", "Speak before a new pet is named (true/false)"),
        ("PW_SAVE_THUMBNAIL", "Save Thumbnail", "Store identification frame as thumbnail (true/false)"),
    ],
    "Camera": [
        ("PW_CAMERA_DEVICE", "Device", "Camera index (0, 1, ...) or stream URL"),
        ("PW_CAMERA_OPEN_TIMEOUT", "Open Timeout", "Seconds to wait for the first frame"),
        ("PW_SNAPSHOT_QUALITY", "Snapshot Quality", "JPEG quality between 0.0 and 1.0"),
    ],
    "AI / LLM": [
        ("PW_LLM_PROVIDER", "LLM Provider", "ollama or openai"),
        ("PW_MODEL", "Vision Model", "Model used for identification and interpretation"),
        ("PW_OLLAMA_URL", "Ollama URL", "Ollama server URL"),
        ("PW_OPENAI_API_KEY", "OpenAI API Key", "API key for OpenAI-compatible backends"),
        ("PW_OPENAI_URL", "OpenAI URL", "Base URL for OpenAI-compatible backends"),
        ("PW_LLM_TIMEOUT", "Timeout", "Request timeout in seconds"),
        ("PW_CLIP_FRAMES", "Clip Frames", "Frames sampled from an uploaded clip"),
    ],
    "Voice": [
        ("PW_TTS_ENGINE", "TTS Engine", "auto, espeak, say, pyttsx3"),
        ("PW_TTS_LOCALE", "Locale", "Announcement locale, e.g. en-US"),
        ("PW_TTS_RATE", "Rate", "Speech rate multiplier (1.0 = normal)"),
        ("PW_TTS_BASE_WPM", "Base WPM", "Words per minute at rate 1.0"),
    ],
    "Storage": [
        ("PW_STORE_PATH", "Store Path", "JSON file holding the pet catalog"),
    ],
    "Logging": [
        ("PW_LOG_LEVEL", "Log Level", "Logging level: DEBUG, INFO, WARNING, ERROR"),
        ("PW_LOG_FILE", "Log File", "Path to log file (empty = console only)"),
    ],
}


class Config:
    """Configuration manager for Petwatch"""

    def __init__(self):
        self._config: Dict[str, str] = {}
        self._env_file: Optional[Path] = None
        self._load()

    def _find_env_file(self) -> Optional[Path]:
        """Find .env file in current directory or parent directories"""
        current = Path.cwd()

        for _ in range(5):
            env_path = current / ".env"
            if env_path.exists():
                return env_path
            current = current.parent

        return None

    def _load(self):
        """Load configuration from .env file and environment"""
        self._config = DEFAULTS.copy()

        self._env_file = self._find_env_file()
        if self._env_file:
            self._load_env_file(self._env_file)

        # Environment wins over .env
        for key in DEFAULTS.keys():
            env_val = os.environ.get(key)
            if env_val is not None:
                self._config[key] = env_val

    def _load_env_file(self, path: Path):
        """Load configuration from .env file"""
        try:
            with open(path, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if "=" in line:
                        key, _, value = line.partition("=")
                        key = key.strip()
                        value = value.strip().strip('"').strip("'")
                        if key in DEFAULTS:
                            self._config[key] = value
        except OSError:
            pass

    def get(self, key: str, default: Any = None) -> str:
        """Get configuration value"""
        return self._config.get(key, default or DEFAULTS.get(key, ""))

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get configuration value as boolean"""
        val = self.get(key, str(default))
        return val.lower() in ("true", "1", "yes", "on")

    def get_int(self, key: str, default: int = 0) -> int:
        """Get configuration value as integer"""
        try:
            return int(self.get(key, str(default)))
        except ValueError:
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get configuration value as float"""
        try:
            return float(self.get(key, str(default)))
        except ValueError:
            return default

    def set(self, key: str, value: str):
        """Set configuration value"""
        self._config[key] = str(value)

    def save(self, path: Optional[Path] = None, keys_only: List[str] = None):
        """Save configuration to .env file.

        Args:
            path: Path to save to (default: current .env file)
            keys_only: If provided, only update these specific keys
        """
        if path is None:
            path = self._env_file or Path.cwd() / ".env"

        if path.exists():
            with open(path, "r") as f:
                existing_lines = f.readlines()

            updated_lines = []
            seen = set()
            for line in existing_lines:
                stripped = line.strip()
                if stripped and not stripped.startswith("#") and "=" in stripped:
                    key = stripped.split("=", 1)[0].strip()
                    seen.add(key)
                    wanted = key in keys_only if keys_only else True
                    if wanted and key in self._config:
                        updated_lines.append(f"{key}={self._config[key]}\n")
                    else:
                        # Preserve unknown keys (user's custom variables)
                        updated_lines.append(line)
                else:
                    updated_lines.append(line)

            # Keys changed from their defaults but not yet in the file
            for key in keys_only or list(DEFAULTS):
                if key in seen or key not in self._config:
                    continue
                if keys_only or self._config[key] != DEFAULTS.get(key):
                    if updated_lines and not updated_lines[-1].endswith("\n"):
                        updated_lines.append("\n")
                    updated_lines.append(f"{key}={self._config[key]}\n")

            with open(path, "w") as f:
                f.writelines(updated_lines)
        else:
            lines = []
            for category, items in CONFIG_CATEGORIES.items():
                lines.append(f"\n# {category}")
                for key, label, desc in items:
                    value = self._config.get(key, DEFAULTS.get(key, ""))
                    lines.append(f"{key}={value}")

            with open(path, "w") as f:
                f.write("# Petwatch Configuration\n")
                f.write("\n".join(lines))
                f.write("\n")

        self._env_file = path

    def to_dict(self) -> Dict[str, str]:
        """Get all configuration as dictionary"""
        return self._config.copy()

    def reload(self):
        """Reload configuration from files"""
        self._load()


# Global config instance
config = Config()
