"""Environment variable expansion for configuration files.

Table parameters and orchestrator settings may reference ``${VAR}`` or
``${VAR:-fallback}``; values are resolved when the configuration is loaded
so secrets never live in the YAML itself. ``.env`` files are loaded with
python-dotenv.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional, Union

from dotenv import load_dotenv

__all__ = ["expand_env_vars", "expand_config", "load_env_file"]

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Expand ``${VAR}`` and ``${VAR:-fallback}`` references in a string.

    Args:
        value: String potentially containing env var references
        strict: If True, raise KeyError for unset variables without fallback

    Example:
        >>> os.environ["DB_HOST"] = "localhost"
        >>> expand_env_vars("${DB_HOST}:${DB_PORT:-1433}")
        'localhost:1433'
    """

    def replacer(match: "re.Match[str]") -> str:
        name, fallback = match.group(1), match.group(2)
        env_value = os.environ.get(name)
        if env_value is not None:
            return env_value
        if fallback is not None:
            return fallback
        if strict:
            raise KeyError(f"Environment variable not set: {name}")
        return match.group(0)

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_config(value: Any, *, strict: bool = False) -> Any:
    """Recursively expand environment variables in nested config values."""
    if isinstance(value, str):
        return expand_env_vars(value, strict=strict)
    if isinstance(value, dict):
        return {k: expand_config(v, strict=strict) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_config(item, strict=strict) for item in value]
    return value
