"""Sandbox module for Docker-based app previews.

This module provides the SandboxProvider that manages isolated Docker
containers for generated apps, and the reconnect-or-rebuild helpers that
keep a project's sandbox reachable across idle timeouts.
"""

from sandbox.docker_sandbox import (
    CommandResult,
    SandboxInfo,
    SandboxProvider,
    SandboxUnavailableError,
)
from sandbox.lifecycle import SandboxHandle, acquire_sandbox, provision_sandbox
from sandbox.security import sanitize_output, validate_command, validate_path

__all__ = [
    "CommandResult",
    "SandboxHandle",
    "SandboxInfo",
    "SandboxProvider",
    "SandboxUnavailableError",
    "acquire_sandbox",
    "provision_sandbox",
    "sanitize_output",
    "validate_command",
    "validate_path",
]
