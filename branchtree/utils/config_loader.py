# file: branchtree/utils/config_loader.py

import json
import logging
import datetime
from pathlib import Path
from typing import Dict, Any
from branchtree.core.exceptions import ConfigurationError

class ConfigLoader:
    """
    Manages loading and saving multiple JSON configuration files.
    Creates default config files if they don't exist.
    """

    def __init__(self, config_dir: Path):
        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.configs: Dict[str, Any] = {}
        self.logger = logging.getLogger(self.__class__.__name__)
        self._defaults = {
            "system_config.json": {
                "logging": {"level": "INFO"},
                "event_priorities": {
                    "DEFAULT": 50,
                    "GENERATION_EVENT": 0,
                    "STORAGE_EVENT": 5,
                    "TREE_EVENT": 10,
                }
            },
            "models_config.json": {
                "active_provider": "gemini",
                "active_model": "gemini-2.5-flash",
                "fallback_provider": "",
                "fallback_model": "",
                "system_prompt": "You are a helpful assistant.",
                "request_timeout_sec": 60,
                "max_attempts": 4,
                "retry_wait_min_sec": 2,
                "retry_wait_max_sec": 10,
                "providers": {
                    "gemini": {"api_key": ""},
                    "openrouter": {"api_key": ""},
                    "ollama": {"base_url": "http://localhost:11434"}
                }
            },
            "context_config.json": {
                "max_messages": 50,
                "pruning_strategy": "fifo",
                "generation_timeout_sec": 180,
                "auto_title": True
            },
            "storage_config.json": {
                "type": "json_file",
                "directory": "conversations"
            }
        }

    @property
    def defaults(self):
        """Public property to access the defaults dictionary, for tests."""
        return self._defaults

    def load_all_configs(self):
        """Loads all default and existing .json config files."""
        self.configs = {}

        for filename, default_data in self._defaults.items():
            self.configs[filename] = self._load_config(filename, default_data)

        # Any other JSON files dropped into the directory
        for path in sorted(self.config_dir.glob("*.json")):
            if path.name not in self.configs:
                self.configs[path.name] = self._load_config(path.name, {})

    def _load_config(self, filename: str, default_data: Dict) -> Dict:
        """
        Loads a single config file. If missing, creates it with default_data.
        If invalid, backs it up and returns default_data.
        """
        file_path = self.config_dir / filename

        if not file_path.exists():
            self.logger.info(f"Config '{filename}' not found. Creating with defaults.")
            try:
                self.save_config(filename, default_data)
            except ConfigurationError as e:
                self.logger.error(f"Failed to create default config for {filename}: {e}")
            return default_data

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except json.JSONDecodeError:
            self.logger.error(f"Error reading {filename}. Backing up and using defaults.")
            timestamp = datetime.datetime.now().strftime('%Y%m%d%H%M%S')
            backup_path = file_path.with_suffix(f"{file_path.suffix}.{timestamp}.bak")
            try:
                file_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to: {backup_path}")
            except OSError as e_rename:
                self.logger.error(f"Failed to rename corrupted config {filename}: {e_rename}")
            return default_data
        except OSError as e:
            self.logger.error(f"Failed to load {filename}: {e}")
            return default_data

        if not isinstance(loaded, dict):
            self.logger.error(f"Config '{filename}' is not a JSON object. Using defaults.")
            return default_data

        # Keys added to the defaults after the file was written
        merged = dict(default_data)
        merged.update(loaded)
        return merged

    def get_config(self, filename: str) -> Dict:
        """Gets a specific loaded config."""
        if filename not in self.configs:
            self.logger.warning(f"Config '{filename}' was not loaded at startup. Returning defaults.")
            return dict(self._defaults.get(filename, {}))
        return self.configs[filename]

    def save_config(self, filename: str, data: Dict):
        """Saves data to a specific config file."""
        file_path = self.config_dir / filename
        self.configs[filename] = data
        try:
            with open(file_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=4)
        except OSError as e:
            self.logger.error(f"Failed to save {filename}: {e}")
            raise ConfigurationError(f"Could not write to file {filename}: {e}") from e
        except TypeError as e:
            self.logger.error(f"Config {filename} is not JSON serializable: {e}")
            raise ConfigurationError(f"Config {filename} is not JSON serializable: {e}") from e

    def get_data_dir(self) -> Path:
        """Returns the root directory for all app data."""
        return self.config_dir

    def get(self, config_name: str, key: str, default: Any = None) -> Any:
        """Convenience method to get a specific key from a config file."""
        return self.get_config(config_name).get(key, default)
