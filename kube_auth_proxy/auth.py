from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Set

_AUTH_KEY_ENV = "CONTROL_API_KEY_FILE"


def resolve_key_file_path(override: Optional[Path] = None) -> Optional[Path]:
    if override is not None:
        return override.expanduser().resolve()
    from_env = os.environ.get(_AUTH_KEY_ENV)
    if from_env:
        return Path(from_env).expanduser().resolve()
    return None


def load_api_keys(key_file_path: Optional[Path]) -> Set[str]:
    """Load newline-delimited API keys, ignoring blank lines.

    ``None`` means no key file is configured and yields an empty set, which
    disables validation. A configured path that does not exist is an error.
    """
    keys: Set[str] = set()
    if key_file_path is None:
        return keys
    if not key_file_path.exists():
        raise FileNotFoundError(
            f"API key file '{key_file_path}' is configured but does not exist."
        )

    with key_file_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            key = line.strip()
            if key:
                keys.add(key)
    return keys


def verify_api_key(api_keys: Set[str], api_key_from_header: Optional[str]) -> bool:
    """
    Verify the supplied API key.

    Returns True if api_keys is empty (validation disabled) or if the key is valid.
    """
    if not api_keys:
        return True
    return api_key_from_header in api_keys
