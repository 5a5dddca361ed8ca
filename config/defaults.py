"""
Default configuration values for sherry-sync.

Centralized defaults that can be overridden by environment variables or the
config file.
"""

from typing import Any, Dict

from core.models.config import DEFAULT_API_URL

CONFIG_FILE = "config.json"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Default rules for a newly added source
DEFAULT_SOURCE_RULES: Dict[str, Any] = {
    "access": "write",
    "max_file_size": 50 * 1024 * 1024,
    "max_dir_size": 0,
    "allow_dir": True,
    "allowed_file_names": [],
    "allowed_file_types": [],
}

# Contents of a freshly created config.json
DEFAULT_CONFIG: Dict[str, Any] = {
    "api_url": DEFAULT_API_URL,
    "sources": {},
    "watchers": [],
    "webhooks": [],
}

# Environment variable mappings for the config file
ENV_VAR_MAPPING = {
    'SHERRY_API_URL': 'api_url',
}


def get_default_config() -> Dict[str, Any]:
    """Get a fresh copy of the default configuration"""
    return {
        key: (dict(value) if isinstance(value, dict) else list(value) if isinstance(value, list) else value)
        for key, value in DEFAULT_CONFIG.items()
    }
