"""
Settings read from ``.env`` files.

Deployments can keep ``TRAINEE_SYNC_*`` settings in a user file
(``~/.config/trainee-sync/.env``) and in project files (``.env``,
``.env.local``) next to ``.trainee-sync.json``. Only prefixed keys are
read and the process environment is never modified; the loader layers the
result beneath it:

    user .env < project .env < os.environ
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

ENV_PREFIX = "TRAINEE_SYNC_"


def read_env_file(path: Path, prefix: str = ENV_PREFIX) -> dict[str, str]:
    """
    Read the ``prefix``-ed keys of one .env file.

    Returns:
        Key/value pairs; empty if the file does not exist. Keys without a
        value are skipped.
    """
    if not path.exists():
        return {}
    settings: dict[str, str] = {}
    for key, value in dotenv_values(path).items():
        if value is None or not key.startswith(prefix):
            continue
        settings[key] = value
    if settings:
        logger.debug("Read %d settings from %s", len(settings), path)
    return settings


def read_env_layers(*layers: Iterable[Path]) -> dict[str, str]:
    """
    Merge .env files, lowest precedence first.

    Example:
        >>> read_env_layers([user_env], [project_env, project_local_env])
    """
    settings: dict[str, str] = {}
    for layer in layers:
        for path in layer:
            settings.update(read_env_file(Path(path)))
    return settings
