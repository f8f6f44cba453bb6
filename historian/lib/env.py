"""Environment variable handling for run configuration.

YAML run configs may reference ``${VAR_NAME}`` or ``$VAR_NAME`` anywhere in
a string value; references are expanded when the config is loaded. A
``.env`` file next to the config is loaded first (python-dotenv), without
overriding variables already set in the environment.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional, Union

from dotenv import load_dotenv

__all__ = ["expand_config", "expand_env_vars", "load_env_file"]

ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Args:
        path: Path to .env file. If None, python-dotenv searches the current
              directory and its parents.
        override: If True, override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Expand environment variable references in a string.

    Unset variables are left as written unless ``strict`` is set.

    Raises:
        KeyError: If strict and a referenced variable is not set

    Example:
        >>> os.environ["LANDING_ROOT"] = "/data/landing"
        >>> expand_env_vars("${LANDING_ROOT}/products.csv")
        '/data/landing/products.csv'
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        env_value = os.environ.get(var_name)
        if env_value is None:
            if strict:
                raise KeyError(f"Environment variable not set: {var_name}")
            return str(match.group(0))
        return env_value

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_config(value: Any, *, strict: bool = False) -> Any:
    """Recursively expand environment variables in a parsed YAML document.

    Dicts and lists are walked; only string leaves are rewritten.
    """
    if isinstance(value, str):
        return expand_env_vars(value, strict=strict)
    if isinstance(value, dict):
        return {key: expand_config(item, strict=strict) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_config(item, strict=strict) for item in value]
    return value
