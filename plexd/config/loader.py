import yaml
from pathlib import Path
from typing import Optional
from .models import AppConfig

def load_config(config_path: Optional[Path]) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model.

    ``None`` yields the built-in defaults; an explicit path must exist.
    """
    if config_path is None:
        return AppConfig()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Flat "max_concurrent" at root is accepted as shorthand for transcode.max_concurrent
    if "max_concurrent" in data:
        data.setdefault("transcode", {})["max_concurrent"] = data.pop("max_concurrent")

    return AppConfig(**data)
