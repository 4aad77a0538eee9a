"""
Version comparison utilities for engine versions.
"""
import re
from typing import Tuple


def parse_version(version: str) -> Tuple[int, int, int]:
    """
    Parse a version string into (major, minor, patch) tuple.

    Supports various version formats:
    - "4.4" -> (4, 4, 0)
    - "4.2.3" -> (4, 2, 3)
    - "4.0.5-v3" -> (4, 0, 5)  # Ignores suffix
    - "percona-4.2.7" -> (4, 2, 7)  # Handles prefix

    Raises:
        ValueError: If version string cannot be parsed
    """
    version = re.sub(r"^percona-", "", version)

    match = re.search(r"(\d+)\.(\d+)(?:\.(\d+))?", version)
    if not match:
        raise ValueError(f"Cannot parse version: {version}")

    major = int(match.group(1))
    minor = int(match.group(2))
    patch = int(match.group(3)) if match.group(3) else 0
    return (major, minor, patch)


def uses_tls_flags(version: str) -> bool:
    """mongod renamed its --ssl* options to --tls* in 4.2."""
    try:
        return parse_version(version) >= (4, 2, 0)
    except ValueError:
        return True
