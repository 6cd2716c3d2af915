"""
Configuration Manager - Handle backend settings persistence
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ANTHROPIC_MODELS = {
    "FAST": "claude-3-5-haiku-20241022",
    "BALANCED": "claude-3-7-sonnet-20250219",
    "POWERFUL": "claude-sonnet-4-20250514",
}

# Model selection for each stage, with the model to fall back to when overloaded
STAGE_MODEL_CONFIG: dict[str, dict[str, Any]] = {
    "STAGE_0_CONTEXT_GATHERER": {
        "model": ANTHROPIC_MODELS["FAST"],
        "fallbackModel": ANTHROPIC_MODELS["BALANCED"],
        "maxTokens": 2000,
        "temperature": 0,
    },
    "STAGE_1_INTENT_PARSER": {
        "model": ANTHROPIC_MODELS["FAST"],
        "fallbackModel": ANTHROPIC_MODELS["BALANCED"],
        "maxTokens": 4000,
        "temperature": 0,
    },
    "STAGE_2_PATCH_PLANNER": {
        "model": ANTHROPIC_MODELS["BALANCED"],
        "fallbackModel": ANTHROPIC_MODELS["POWERFUL"],
        "maxTokens": 12000,
        "temperature": 0,
    },
    "STAGE_3_CODE_GENERATOR": {
        "model": ANTHROPIC_MODELS["POWERFUL"],
        "fallbackModel": ANTHROPIC_MODELS["BALANCED"],
        "maxTokens": 20000,
        "temperature": 0.1,
    },
    "STAGE_4_VALIDATOR": {
        "model": ANTHROPIC_MODELS["POWERFUL"],
        "fallbackModel": ANTHROPIC_MODELS["BALANCED"],
        "maxTokens": 20000,
        "temperature": 0,
    },
    "DEFAULT": {
        "model": ANTHROPIC_MODELS["POWERFUL"],
        "fallbackModel": ANTHROPIC_MODELS["BALANCED"],
        "maxTokens": 20000,
        "temperature": 0,
    },
}


class ConfigManager:
    """Manage configuration persistence"""

    _instance = None
    _config_file = None

    def __init__(self):
        try:
            # 1st: environment variable
            config_dir = os.environ.get("PATCHFLOW_CONFIG_DIR")

            # 2nd: ~/.patchflow
            if not config_dir:
                config_dir = os.path.expanduser("~/.patchflow")

            if config_dir:
                config_path = Path(config_dir)
                try:
                    config_path.mkdir(parents=True, exist_ok=True)
                    self._config_file = config_path / "config.json"
                except OSError as e:
                    logger.warning("[ConfigManager] Cannot write to %s: %s", config_dir, e)
                    self._config_file = None

            # Last resort: the temp directory
            if not self._config_file:
                tmp_dir = Path(tempfile.gettempdir()) / "patchflow"
                tmp_dir.mkdir(parents=True, exist_ok=True)
                self._config_file = tmp_dir / "config.json"
                logger.warning("[ConfigManager] Using temporary config path: %s", self._config_file)

        except OSError as e:
            logger.error("[ConfigManager] Critical error during init: %s", e)
            self._config_file = Path(tempfile.gettempdir()) / "patchflow_config_fallback.json"

        self._config = self._load_config()

    @classmethod
    def get_instance(cls) -> "ConfigManager":
        """Get singleton instance"""
        if cls._instance is None:
            cls._instance = ConfigManager()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def _load_config(self) -> dict[str, Any]:
        """Load configuration from file, layered over the defaults"""
        defaults = self._default_config()
        if not self._config_file.exists():
            return defaults

        try:
            with open(self._config_file) as f:
                stored = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error("[ConfigManager] Error loading config: %s", e)
            return defaults
        return _deep_merge(defaults, stored)

    def _default_config(self) -> dict[str, Any]:
        """Get default configuration"""
        return {
            "provider": "anthropic",
            "anthropic": {
                "apiKey": os.environ.get("ANTHROPIC_API_KEY", ""),
                "endpoint": "https://api.anthropic.com/v1/messages",
                "version": "2023-06-01",
            },
            "openai": {
                "apiKey": os.environ.get("OPENAI_API_KEY", ""),
                "model": "gpt-4o",
            },
            "vllm": {
                "endpoint": "http://localhost:8000",
                "apiKey": "",
                "model": "meta-llama/Llama-3.1-8B-Instruct",
            },
            "stages": copy.deepcopy(STAGE_MODEL_CONFIG),
            "retry": {"maxAttempts": 3, "baseDelayMs": 1000, "maxDelayMs": 30000},
            "requestTimeoutSeconds": 120,
            "sandbox": {"maxOutputLength": 10000, "timeoutMs": 5000, "maxArgs": 10},
            "pipeline": {
                "enableContextGathering": True,
                "maxContextToolCalls": 3,
                "maxPromptFileChars": 60000,
                "projectsRoot": os.path.join(tempfile.gettempdir(), "patchflow-projects"),
            },
            "server": {"host": "0.0.0.0", "port": 8000},
        }

    def get_config(self) -> dict[str, Any]:
        """Get current configuration"""
        # Reload config from file to ensure we have the latest
        self._config = self._load_config()
        return copy.deepcopy(self._config)

    def save_config(self, config: dict[str, Any]):
        """Save configuration to file"""
        self._config = _deep_merge(self._config, config)

        self._config_file.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(self._config_file, "w") as f:
                json.dump(self._config, f, indent=2)
        except OSError as e:
            raise RuntimeError(f"Failed to save config: {e}")

    def get(self, key: str, default=None):
        """Get specific config value"""
        return self._config.get(key, default)

    def set(self, key: str, value: Any):
        """Set specific config value"""
        self.save_config({key: value})


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
