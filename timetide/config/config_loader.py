"""
Configuration loader for the TimeTide scheduling core
Defaults, overlaid by config/timetide.yaml, overlaid by environment variables
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path('config/timetide.yaml')


def default_config() -> Dict[str, Any]:
    """Built-in configuration used when no YAML file overrides a value"""
    return {
        'database': {
            'url': 'sqlite+aiosqlite:///./data/timetide.db',
            'echo': False
        },
        'logging': {
            'level': 'INFO',
            'json': False,
            'file_path': None,
            'file_max_size': 10 * 1024 * 1024,
            'file_backup_count': 5
        },
        'worker': {
            'concurrency': 5,
            'poll_interval_seconds': 1.0,
            'lease_seconds': 120,
            'handler_timeout_seconds': 60,
            'max_attempts': 3,
            'backoff_base_seconds': 5,
            'backoff_max_seconds': 3600,
            'backoff_jitter_ratio': 0.2,
            'cleanup_interval_seconds': 3600,
            'done_retention_hours': 24,
            'failed_retention_days': 7,
            'shutdown_grace_seconds': 10
        },
        'sync': {
            'token_refresh_margin_seconds': 300,
            'window_past_hours': 1,
            'window_days_ahead': 60,
            'periodic_interval_seconds': 3600,
            'token_refresh_interval_seconds': 1800,
            'token_refresh_horizon_minutes': 60,
            'request_timeout_seconds': 30
        },
        'webhooks': {
            'max_attempts': 5,
            'timeout_seconds': 10,
            'backoff_base_seconds': 10,
            'backoff_max_seconds': 3600,
            'auto_disable_threshold': 10,
            'user_agent': 'TimeTide-Webhook/1.0',
            'stall_grace_seconds': 300,
            'recovery_interval_seconds': 600
        },
        'providers': {
            'google': {
                'client_id': '',
                'client_secret': '',
                'token_url': 'https://oauth2.googleapis.com/token',
                'api_base': 'https://www.googleapis.com/calendar/v3'
            },
            'outlook': {
                'client_id': '',
                'client_secret': '',
                'token_url': 'https://login.microsoftonline.com/common/oauth2/v2.0/token',
                'api_base': 'https://graph.microsoft.com/v1.0'
            }
        }
    }


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load configuration from defaults, YAML file and environment"""

    load_dotenv()

    config = default_config()

    yaml_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if yaml_path.exists():
        try:
            with open(yaml_path, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    _deep_update(config, yaml_config)
                    logger.info(f"Configuration loaded from {yaml_path}")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load configuration from {yaml_path}: {e}")
            logger.error("Using default configuration")
    else:
        logger.info(f"Configuration file {yaml_path} not found, using defaults")

    _apply_env_overrides(config)

    return config


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Environment variables win over file values"""
    if os.getenv('DATABASE_URL'):
        config['database']['url'] = os.getenv('DATABASE_URL')

    if os.getenv('LOG_LEVEL'):
        config['logging']['level'] = os.getenv('LOG_LEVEL', 'INFO').upper()

    for provider in ('google', 'outlook'):
        prefix = provider.upper()
        if os.getenv(f'{prefix}_CLIENT_ID'):
            config['providers'][provider]['client_id'] = os.getenv(f'{prefix}_CLIENT_ID')
        if os.getenv(f'{prefix}_CLIENT_SECRET'):
            config['providers'][provider]['client_secret'] = os.getenv(f'{prefix}_CLIENT_SECRET')

    threshold = os.getenv('TIMETIDE_WEBHOOK_AUTO_DISABLE_THRESHOLD')
    if threshold:
        try:
            config['webhooks']['auto_disable_threshold'] = int(threshold)
        except ValueError:
            logger.warning(f"Ignoring non-integer TIMETIDE_WEBHOOK_AUTO_DISABLE_THRESHOLD={threshold!r}")


def _deep_update(base_dict: Dict[str, Any], update_dict: Dict[str, Any]) -> None:
    """Deep update nested dictionary"""
    for key, value in update_dict.items():
        if key in base_dict and isinstance(base_dict[key], dict) and isinstance(value, dict):
            _deep_update(base_dict[key], value)
        else:
            base_dict[key] = value
