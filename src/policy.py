"""Centralized policy loading for opctl.

The policy file maps roles to capability tokens and lists the principals
allowed to authenticate. It is read once at startup and treated as static.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from config import config

# Policy file path
POLICY_PATH = config.policy_path

REQUIRED_KEYS = ("roles", "principals")


def load_policy(path: Path = POLICY_PATH) -> Dict[str, Any]:
    """
    Load policy configuration from JSON file.

    Args:
        path: Path to policy.json file (default: POLICY_PATH)

    Returns:
        Dictionary containing policy configuration

    Raises:
        FileNotFoundError: If policy file doesn't exist
        json.JSONDecodeError: If policy file is malformed
        ValueError: If a required top-level key is missing
    """
    with path.open("r", encoding="utf-8") as policy_file:
        policy = json.load(policy_file)

    missing = [key for key in REQUIRED_KEYS if key not in policy]
    if missing:
        raise ValueError(f"Policy missing required keys: {missing}")
    return policy
