"""Configuration file loader with validation"""

import yaml
import os
from pathlib import Path
from typing import Dict, Any, Optional
from .errors import ConfigurationError

DEFAULT_CONFIG_PATH = "config/pipeline.yaml"

REQUIRED_KEYS = ['version', 'pipeline', 'currency', 'anomaly_detection', 'patterns']


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load YAML configuration file with validation.
    Falls back to the PIPELINE_CONFIG env var, then to config/pipeline.yaml.

    Args:
        config_path: Path to configuration file

    Returns:
        Dictionary with configuration

    Raises:
        ConfigurationError: If file doesn't exist or invalid YAML
    """
    config_path = config_path or os.getenv("PIPELINE_CONFIG", DEFAULT_CONFIG_PATH)

    config_file = Path(config_path)
    if not config_file.exists():
        # Relative paths also resolve against the project root
        candidate = Path(__file__).resolve().parents[2] / config_path
        if config_file.is_absolute() or not candidate.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        config_file = candidate

    try:
        with open(config_file, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
    except OSError as e:
        raise ConfigurationError(f"Error loading configuration: {e}")

    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

    # Validate required keys
    missing_keys = [key for key in REQUIRED_KEYS if key not in config]
    if missing_keys:
        raise ConfigurationError(f"Missing required configuration keys: {missing_keys}")

    return config


def save_config(config_path: str, config: Dict[str, Any]) -> None:
    """
    Save configuration to YAML file

    Args:
        config_path: Path to configuration file
        config: Configuration dictionary

    Raises:
        ConfigurationError: If unable to write file
    """
    try:
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w') as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Error saving configuration: {e}")


def get_stage_config(config: Dict[str, Any], stage: str) -> Dict[str, Any]:
    """
    Get stage-specific configuration merged over the shared pipeline settings

    Args:
        config: Full configuration dictionary
        stage: Stage name (e.g. "amounts", "anomalies")

    Returns:
        Stage configuration dictionary
    """
    pipeline = config.get('pipeline', {})
    merged = {
        'batch_size': pipeline.get('batch_size'),
        'batch_timeout_seconds': pipeline.get('batch_timeout_seconds'),
    }
    merged.update(pipeline.get('stages', {}).get(stage, {}) or {})
    return merged
