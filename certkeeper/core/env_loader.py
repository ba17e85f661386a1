"""
Safe loader for `.env` style files.

Parses newline-delimited KEY=VALUE pairs with `#` comments and
trailing-backslash continuation lines. Invalid keys are skipped with a
warning instead of failing the whole file.
"""

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_env_lines(lines) -> dict[str, str]:
    """
    Parse env file lines into a mapping.

    Args:
        lines: Iterable of raw lines (trailing newlines allowed)

    Returns:
        Mapping of valid keys to values, later keys overriding earlier ones
    """
    result: dict[str, str] = {}
    iterator = iter(lines)

    for raw in iterator:
        line = raw.rstrip("\r\n")

        # Skip empty lines and comments
        if not line.strip() or line.strip().startswith("#"):
            continue

        # Multiline support: join lines ending with a backslash
        while line.rstrip().endswith("\\"):
            line = line.rstrip()[:-1]
            next_line = next(iterator, None)
            if next_line is None:
                break
            line += next_line.rstrip("\r\n")

        key, _, value = line.partition("=")
        key = key.strip()
        value = _strip_quotes(value.strip())

        if not _KEY_PATTERN.match(key):
            logger.warning(f"Skipping invalid key: {key}")
            continue

        result[key] = value

    return result


def load_env_file(path: str | Path) -> dict[str, str]:
    """
    Load a `.env` file into a mapping.

    A missing file is not an error: the mapping is simply empty.
    """
    env_path = Path(path)
    if not env_path.is_file():
        return {}

    with env_path.open(encoding="utf-8") as fh:
        values = parse_env_lines(fh)

    logger.debug(f"Loaded {len(values)} variables from {env_path}")
    return values


def template_variables(env_file: str | Path | None) -> Mapping[str, str]:
    """
    Build the read-only substitution mapping used to render config templates.

    The process environment is overlaid with the env file contents, which
    is re-read on every call so edits are picked up by the next render.
    """
    merged = dict(os.environ)
    if env_file is not None:
        merged.update(load_env_file(env_file))
    return MappingProxyType(merged)
