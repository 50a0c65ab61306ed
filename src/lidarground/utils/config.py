"""Configuration loader.

Reads configuration files in YAML format and returns a dictionary.
The typed configuration objects live in
`lidarground.processing.config`; this module only deals with the file.
"""

from pathlib import Path
from typing import Any, Dict

import yaml

from ..common.errors import ConfigError, IOFailure


def load_config(path: str) -> Dict[str, Any]:
    """Load a YAML configuration file into a dictionary.

    Parameters
    ----------
    path : str
        Path to the YAML configuration file.

    Returns
    -------
    dict
        Parsed configuration dictionary.  An empty file yields an
        empty dict.

    Raises
    ------
    IOFailure
        If the file does not exist or cannot be read.
    ConfigError
        If the file is not valid YAML or does not hold a mapping.
    """
    cfg_path = Path(path)
    if not cfg_path.is_file():
        raise IOFailure(f"configuration file not found: {cfg_path}")
    try:
        with open(cfg_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise IOFailure(f"cannot read configuration file {cfg_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {cfg_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{cfg_path} must contain a mapping at top level")
    return data
