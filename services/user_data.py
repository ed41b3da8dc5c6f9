"""Launch scripts: instance user data and the ``script`` resource listing."""

from __future__ import annotations

import base64
import os
from pathlib import Path

DEFAULT_SETUP_SCRIPT = """#!/bin/bash
set -euo pipefail

export DEBIAN_FRONTEND=noninteractive
apt-get update
apt-get install -y awscli git htop python3-pip unzip
touch /home/ubuntu/.setup_complete
"""


def get_user_data_from_script(script_directory: str, script: str) -> str:
    """Contents of ``script`` if it exists, else ``script_directory/script``.

    Falls back to the built-in setup script when neither file exists.
    """
    if os.path.exists(script):
        return Path(script).read_text(encoding="utf-8")
    candidate = Path(script_directory) / script
    if not candidate.exists():
        return DEFAULT_SETUP_SCRIPT
    return candidate.read_text(encoding="utf-8")


def encode_user_data(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def list_scripts(script_directory: str) -> list[str]:
    """File names in ``script_directory``, sorted; a missing directory lists nothing."""
    path = Path(script_directory)
    if not path.is_dir():
        return []
    return sorted(entry.name for entry in path.iterdir() if entry.is_file())


__all__ = ["DEFAULT_SETUP_SCRIPT", "encode_user_data", "get_user_data_from_script", "list_scripts"]
