"""
Importer configuration.

Values come from an optional JSON file and are overridden by command-line
arguments.
"""

import argparse
from dataclasses import dataclass, field, fields
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import PreconditionError
from .workflow import DEFAULT_ARCHIVE_TOOL

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('instance_id', 'os_name', 'bucket_name')


@dataclass
class ImporterConfig:
    instance_id: str
    os_name: str
    bucket_name: str
    os_archs: List[str] = field(default_factory=list)
    image_ids: List[str] = field(default_factory=list)
    local_path: str = '/tmp/hashr/aws'
    remote_path: str = '/data'
    ssh_user: str = 'ec2-user'
    ssh_key: Optional[str] = None
    region: Optional[str] = None
    poll_interval: float = 1
    max_attempts: int = 600
    archive_tool: str = DEFAULT_ARCHIVE_TOOL
    delete_archive: bool = False
    workers: int = 1
    output_file: str = 'import_result.json'


def _read_config_file(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise PreconditionError(f"Failed parsing config file {path}: {e}")

    if not isinstance(data, dict):
        raise PreconditionError(f"Config file {path} must contain a JSON object")

    return data


def load_config(args: argparse.Namespace) -> ImporterConfig:
    """
    Build the configuration from parsed arguments.

    Arguments left unset (None) fall back to the config file, then to the
    dataclass defaults.

    Raises:
        PreconditionError: If a required value is missing
    """
    known = {f.name for f in fields(ImporterConfig)}
    values: Dict[str, Any] = {}

    config_file = getattr(args, 'config', None)
    if config_file:
        logger.info(f"Loading configuration from {config_file}")
        for key, value in _read_config_file(config_file).items():
            if key in known:
                values[key] = value
            else:
                logger.warning(f"Ignoring unknown config key: {key}")

    for name in known:
        value = getattr(args, name, None)
        if value is not None:
            values[name] = value

    missing = [name for name in REQUIRED_FIELDS if not values.get(name)]
    if missing:
        raise PreconditionError(f"Missing required configuration: {', '.join(missing)}")

    return ImporterConfig(**values)
