"""Access token lookup and transfer configuration loading."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path

import keyring

from dbxlib.models import TransferConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "dbxlib-dropbox"
KEY_NAME = "access_token"
TOKEN_ENV_VAR = "DROPBOX_ACCESS_TOKEN"
SECRETS_FILE = Path("secrets.http")
DEFAULT_CONFIG_PATH = Path("config/transfer_config.json")

_SECRETS_LINE = re.compile(r"^\s*access_token\s*[=:]\s*(\S+)\s*$")


def get_access_token(secrets_path: Path | None = None) -> str:
    """Get the Dropbox access token.

    Lookup order: system keyring, ``DROPBOX_ACCESS_TOKEN`` environment
    variable, then an ``access_token = ...`` line in ``secrets.http``.

    Raises:
        RuntimeError: If no token is found anywhere, with setup instructions.
    """
    token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if token:
        return token

    token = os.environ.get(TOKEN_ENV_VAR)
    if token:
        return token

    token = read_secrets_file(secrets_path or SECRETS_FILE)
    if token:
        return token

    raise RuntimeError(
        "Dropbox access token not found.\n"
        "Set it with: dbx config set-token YOUR_TOKEN\n"
        f"Or: export {TOKEN_ENV_VAR}=your-token"
    )


def read_secrets_file(path: Path) -> str | None:
    """Return the ``access_token`` entry of a ``key = value`` secrets file."""
    if not path.exists():
        return None
    with open(path) as f:
        for line in f:
            match = _SECRETS_LINE.match(line)
            if match:
                return match.group(1).strip("\"'")
    logger.debug("No access_token entry in %s", path)
    return None


def load_transfer_config(config_path: Path | None = None) -> TransferConfig:
    """Load transfer configuration from JSON, falling back to defaults.

    Reads ``config/transfer_config.json`` when *config_path* is ``None``.
    Unknown keys are ignored.

    Args:
        config_path: Optional explicit path to the JSON file.

    Returns:
        TransferConfig populated from the file merged over defaults.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)

    field_names = {f.name for f in TransferConfig.__dataclass_fields__.values()}
    kwargs = {k: v for k, v in data.items() if k in field_names}
    ignored = sorted(set(data) - field_names)
    if ignored:
        logger.warning("Ignoring unknown transfer config keys: %s", ", ".join(ignored))

    return TransferConfig(**kwargs)
