import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
DB_PATH_ENV = "CONTENT_PIPELINE_DB"


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


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    default_path: Path = DEFAULT_CONFIG_PATH,
    local_path: Path = LOCAL_CONFIG_PATH,
) -> PipelineConfig:
    """
    Resolve config: Default < Local < environment < CLI
    Returns validated Pydantic PipelineConfig model.

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(Path(default_path))

    # 2. Merge local overrides
    config_data = merge_dicts(config_data, load_yaml(Path(local_path)))

    # 3. Environment
    db_path = os.environ.get(DB_PATH_ENV)
    if db_path:
        config_data = merge_dicts(config_data, {"database": {"path": db_path}})

    # 4. Validate, then apply CLI overrides
    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def backoff_delay(config: PipelineConfig, attempt_count: int) -> float:
    """Exponential retry delay: min(base * 2**attempt_count, max)."""
    jobs = config.jobs
    return min(jobs.backoff_base_s * (2 ** attempt_count), jobs.backoff_max_s)
