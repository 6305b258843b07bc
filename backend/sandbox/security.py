"""Input validation for sandbox file and command operations.

Paths handed to the sandbox come straight from LLM tool calls and from
stored fragments, so they are normalized and confined to the sandbox
working directory before any docker call is made.
"""

import posixpath


def validate_command(command: str) -> tuple[bool, str]:
    """Validate a shell command before execution in the sandbox.

    The sandbox itself is the isolation boundary, so any non-empty command
    is accepted. Null bytes are rejected because they break exec argument
    passing.

    Args:
        command: The shell command string to validate.

    Returns:
        A tuple of (is_valid, error_message).

    Examples:
        >>> validate_command("npm install react")
        (True, "")
        >>> validate_command("   ")
        (False, "Command cannot be empty")
    """
    if not command or not command.strip():
        return False, "Command cannot be empty"

    if "\x00" in command:
        return False, "Command contains null byte"

    return True, ""


def validate_path(workdir: str, path: str) -> tuple[bool, str, str]:
    """Validate a file path and confine it to the sandbox working directory.

    Relative paths are resolved against ``workdir``. Absolute paths are
    accepted only when they already point inside ``workdir``.

    Args:
        workdir: Absolute working directory inside the container
            (e.g., "/home/user").
        path: Path the agent or a stored fragment refers to.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).

    Examples:
        >>> validate_path("/home/user", "app/page.tsx")
        (True, "", "/home/user/app/page.tsx")
        >>> validate_path("/home/user", "/home/user/app/page.tsx")
        (True, "", "/home/user/app/page.tsx")
        >>> validate_path("/home/user", "../etc/passwd")
        (False, "Path traversal blocked: contains '..'", "")
        >>> validate_path("/home/user", "/etc/passwd")
        (False, "Path outside sandbox workdir: /etc/passwd", "")
    """
    if not path or not path.strip():
        return False, "Path cannot be empty", ""

    if "\x00" in path:
        return False, "Path contains null byte", ""

    normalized = path.strip().replace("\\", "/")

    # Reject parent traversal components while allowing names like "file..bak"
    if ".." in normalized.split("/"):
        return False, "Path traversal blocked: contains '..'", ""

    root = posixpath.normpath(workdir)
    resolved = posixpath.normpath(posixpath.join(root, normalized))

    if resolved == root:
        return False, "Path must name a file inside the sandbox workdir", ""
    if not resolved.startswith(root.rstrip("/") + "/"):
        return False, f"Path outside sandbox workdir: {path}", ""

    return True, "", resolved


def relative_to_workdir(workdir: str, absolute_path: str) -> str:
    """Return ``absolute_path`` relative to ``workdir`` (for file-map keys)."""
    return posixpath.relpath(absolute_path, posixpath.normpath(workdir))


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Truncate command output for safe transmission.

    Args:
        output: The raw command output string.
        max_length: Maximum allowed length before truncation.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = output[:max_length] + f"\n... [truncated, {truncated_chars} chars omitted]"

    return output
