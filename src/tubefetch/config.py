import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import TubefetchConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
ENV_PREFIX = "TUBEFETCH_"


def get_config_value(config: Union[TubefetchConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: TubefetchConfig model or dict
        path: Dot-separated path like "queue.max_attempts"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, TubefetchConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def load_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Collect TUBEFETCH_<SECTION>__<KEY> environment overrides.

    Values are parsed as YAML scalars so "3" becomes 3 and "true" becomes True.
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        parts = name[len(ENV_PREFIX):].lower().split("__")
        if len(parts) != 2 or not all(parts):
            continue
        section, key = parts
        data.setdefault(section, {})[key] = yaml.safe_load(raw) if raw != "" else None
    return data


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> TubefetchConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic TubefetchConfig model.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(config_path or DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, load_env(environ))

    config = TubefetchConfig.from_dict(config_data)
    return config.merge_overrides(cli_args)
