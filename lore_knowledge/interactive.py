"""Interactive input helpers for the lore CLI."""

from __future__ import annotations

from pathlib import Path


def prompt_line(prompt: str, required: bool = False, default: str = "") -> str:
    """Prompt for single-line input.

    Args:
        prompt: The prompt text to display.
        required: If True, re-prompt until non-empty input is provided.
        default: Value used when the user just presses enter.

    Returns:
        The user's input, stripped of leading/trailing whitespace.
    """
    label = f"  {prompt} [{default}]: " if default else f"  {prompt}: "
    while True:
        try:
            value = input(label).strip() or default
            if value or not required:
                return value
            print("  This field is required. Please enter a value.")
        except EOFError:
            # Handle piped input ending
            if required:
                raise ValueError("Required input not provided") from None
            return default


def default_source_name(path: str) -> str:
    """Capitalized directory name, used when no source name is given."""
    base = Path(path).expanduser().name or "Source"
    return base[:1].upper() + base[1:]


def show_source_preview(name: str, path: str, glob: str, project: str) -> bool:
    """Display the source about to be added and ask for confirmation.

    Returns:
        True if user confirms, False otherwise.
    """
    separator = "─" * 50  # Box drawing character

    print()
    print(separator)
    print(f"  Name:    {name}")
    print(f"  Path:    {path}")
    print(f"  Glob:    {glob}")
    print(f"  Project: {project}")
    print(separator)
    print()

    try:
        response = input("Add this source? [Y/n] ").strip().lower()
        # Default to yes if empty
        return response in ("", "y", "yes")
    except EOFError:
        return False


def prompt_sync_source(
    name: str | None = None,
    path: str | None = None,
    glob: str | None = None,
    project: str | None = None,
) -> dict[str, str] | None:
    """Ask for the fields of a new sync source, skipping those already given.

    Returns:
        Dict with name, path, glob and project, or None if the user declined.
    """
    path = path or prompt_line("Directory to watch", required=True)
    if not Path(path).expanduser().is_dir():
        print(f"  Note: {path} does not exist yet.")
    project = project or prompt_line("Project", required=True)
    glob = glob or prompt_line("File glob", default="**/*")
    name = name or prompt_line("Source name", default=default_source_name(path))

    if not show_source_preview(name, path, glob, project):
        return None
    return {"name": name, "path": path, "glob": glob, "project": project}
