"""Glob matching for sync source patterns."""

import re

# Trailing ".{a,b,c}" alternation, e.g. "**/*.{md,txt}"
_BRACE_PATTERN = re.compile(r"^(.*)\{([^{}]*)\}([^{}]*)$")


def glob_to_regex(glob: str) -> str:
    """Translate a glob (without brace alternation) into an anchored regex.

    Args:
        glob: Glob pattern using ``?``, ``*``, ``**/`` and ``**``.

    Returns:
        Regular expression source anchored at both ends.
    """
    parts: list[str] = []
    i = 0
    while i < len(glob):
        if glob.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif glob.startswith("**", i):
            parts.append(".*")
            i += 2
        elif glob[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif glob[i] == "?":
            parts.append(".")
            i += 1
        elif glob[i] == ".":
            parts.append(r"\.")
            i += 1
        else:
            parts.append(glob[i])
            i += 1
    return "^" + "".join(parts) + "$"


def matches_glob(relative_path: str, glob: str) -> bool:
    """Check whether a relative path matches a sync glob.

    Brace alternations are expanded recursively into one sub-pattern per
    alternative. Any other regex metacharacter passes through as-is; a
    pattern that cannot be compiled simply does not match.

    Args:
        relative_path: Path relative to the source root.
        glob: Glob pattern, e.g. ``**/*.{md,txt}``.

    Returns:
        True if the whole path matches the pattern.
    """
    path = relative_path.replace("\\", "/")

    brace = _BRACE_PATTERN.match(glob)
    if brace:
        prefix, options, suffix = brace.groups()
        return any(
            matches_glob(path, f"{prefix}{option}{suffix}") for option in options.split(",")
        )

    try:
        return re.fullmatch(glob_to_regex(glob), path) is not None
    except re.error:
        return False
