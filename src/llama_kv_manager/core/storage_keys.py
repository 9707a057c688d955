"""
Centralized dump naming and validation.

This module provides:
- Dump name normalization and validation
- The name -> file name mapping shared by the JSON dump and the KV-cache blob
- Schema version constants for the dump document

All dump file names should be generated through this module so the
`<name>.json` metadata file and the `<name>.bin` cache blob always pair up.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Final

from llama_kv_manager.errors import InvalidDumpNameError


# =============================================================================
# Schema Versioning
# =============================================================================

# Dumps without runtimeContext are version 1, dumps with it are version 2.
DUMP_V1: Final[int] = 1
DUMP_V2: Final[int] = 2


# =============================================================================
# File Extensions
# =============================================================================

DUMP_EXTENSION: Final[str] = ".json"
CACHE_EXTENSION: Final[str] = ".bin"
TEMP_SUFFIX: Final[str] = ".tmp"


# =============================================================================
# Name Validation
# =============================================================================

# ASCII letters, digits, underscore, hyphen, dot and space. No path separators.
DUMP_NAME_PATTERN: Final[re.Pattern] = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_. -]{0,127}$")
MAX_DUMP_NAME_LENGTH: Final[int] = 128

# Names that collide with device files on Windows
RESERVED_NAMES: Final[frozenset[str]] = frozenset({
    "con", "prn", "aux", "nul",
    "com1", "com2", "com3", "com4", "lpt1", "lpt2", "lpt3",
})


def validate_dump_name(value: str) -> str:
    """
    Normalize and validate a user-supplied dump name.

    Steps:
    1. Strip leading/trailing whitespace
    2. Normalize unicode (NFKC folds fullwidth letters to ASCII)
    3. Validate against pattern
    4. Reject parent references and reserved names

    Args:
        value: Raw dump name from the user

    Returns:
        Normalized dump name

    Raises:
        InvalidDumpNameError: If the name cannot be used as a file name
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidDumpNameError(str(value), "name cannot be empty")

    name = unicodedata.normalize("NFKC", value.strip())

    if len(name) > MAX_DUMP_NAME_LENGTH:
        raise InvalidDumpNameError(
            name, f"too long: {len(name)} chars, max {MAX_DUMP_NAME_LENGTH}"
        )

    if not DUMP_NAME_PATTERN.match(name):
        raise InvalidDumpNameError(
            name,
            "only ASCII letters, digits, spaces, dots, hyphens and underscores are allowed",
        )

    if ".." in name or name.endswith("."):
        raise InvalidDumpNameError(name, "dots may not repeat or end the name")

    if name.lower() in RESERVED_NAMES:
        raise InvalidDumpNameError(name, "reserved name")

    return name


# =============================================================================
# File Naming
# =============================================================================


def cache_filename(dump_name: str) -> str:
    """
    File name the server uses for the KV-cache blob of a dump.

    Args:
        dump_name: Validated dump name

    Returns:
        "<dump_name>.bin"
    """
    return f"{dump_name}{CACHE_EXTENSION}"


def dump_filename(dump_name: str) -> str:
    """
    File name of the JSON dump document.

    Args:
        dump_name: Validated dump name

    Returns:
        "<dump_name>.json"
    """
    return f"{dump_name}{DUMP_EXTENSION}"


def dump_name_from_filename(filename: str) -> str | None:
    """
    Reverse of dump_filename for directory listings.

    Returns None for anything that is not a finished dump document,
    including in-flight temporary files.
    """
    if filename.startswith(".") or filename.endswith(TEMP_SUFFIX):
        return None
    if not filename.endswith(DUMP_EXTENSION):
        return None
    name = filename[: -len(DUMP_EXTENSION)]
    return name or None
