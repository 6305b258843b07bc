"""Sandbox reconnect-or-rebuild reconciliation.

A stored sandbox id may point at a container that has since expired. The
helpers here turn a possibly stale id plus the authoritative files mapping
into a reachable sandbox: reconnect when possible, otherwise provision a
fresh one and replay every file into it. A file that fails to replay is
logged and skipped; partial reconstruction is still returned as success.
"""

from dataclasses import dataclass, field

import structlog

from config import settings
from sandbox.docker_sandbox import SandboxProvider

logger = structlog.get_logger(__name__)


@dataclass
class SandboxHandle:
    """A reachable sandbox and how it was obtained.

    Attributes:
        sandbox_id: Opaque provider id.
        url: Preview URL of the dev server.
        recreated: True when a new sandbox was provisioned.
        replayed: Paths written into a recreated sandbox.
        failed: Paths that could not be replayed.
    """

    sandbox_id: str
    url: str
    recreated: bool = False
    replayed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


async def _replay_files(
    provider: SandboxProvider,
    sandbox_id: str,
    files: dict[str, str],
) -> tuple[list[str], list[str]]:
    replayed: list[str] = []
    failed: list[str] = []
    # One write at a time, in mapping order
    for path, content in files.items():
        try:
            await provider.write_file(sandbox_id, path, content)
            replayed.append(path)
        except Exception as e:
            failed.append(path)
            logger.error(
                "sandbox_file_replay_failed",
                sandbox_id=sandbox_id,
                path=path,
                error=str(e),
            )
    return replayed, failed


async def provision_sandbox(
    provider: SandboxProvider,
    files: dict[str, str] | None = None,
    timeout_seconds: int | None = None,
) -> SandboxHandle:
    """Create a fresh sandbox and replay ``files`` into it.

    Raises:
        RuntimeError: If the provider cannot create a sandbox.
    """
    timeout_seconds = timeout_seconds or settings.sandbox_timeout_seconds
    info = await provider.create(timeout_seconds=timeout_seconds)
    await provider.set_timeout(info.sandbox_id, timeout_seconds)

    replayed, failed = await _replay_files(provider, info.sandbox_id, files or {})
    url = await provider.get_host(info.sandbox_id, settings.sandbox_preview_port)

    logger.info(
        "sandbox_provisioned",
        sandbox_id=info.sandbox_id,
        replayed=len(replayed),
        failed=len(failed),
    )
    return SandboxHandle(
        sandbox_id=info.sandbox_id,
        url=url,
        recreated=True,
        replayed=replayed,
        failed=failed,
    )


async def acquire_sandbox(
    provider: SandboxProvider,
    sandbox_id: str | None,
    files: dict[str, str] | None = None,
    timeout_seconds: int | None = None,
) -> SandboxHandle:
    """Reconnect to ``sandbox_id`` or rebuild it from ``files``.

    The idle timeout is re-applied on both paths because the provider only
    extends it on an explicit call.

    Args:
        provider: Sandbox provider.
        sandbox_id: Previously used sandbox, if any.
        files: Authoritative path to content mapping for a rebuild.
        timeout_seconds: Idle timeout to apply.

    Returns:
        A SandboxHandle for a reachable sandbox.
    """
    timeout_seconds = timeout_seconds or settings.sandbox_timeout_seconds

    if sandbox_id:
        try:
            info = await provider.connect(sandbox_id)
            await provider.set_timeout(info.sandbox_id, timeout_seconds)
            url = await provider.get_host(info.sandbox_id, settings.sandbox_preview_port)
            logger.debug("sandbox_reconnected", sandbox_id=sandbox_id)
            return SandboxHandle(sandbox_id=info.sandbox_id, url=url)
        except Exception as e:
            logger.info(
                "sandbox_reconnect_failed",
                sandbox_id=sandbox_id,
                error=str(e),
            )

    return await provision_sandbox(provider, files, timeout_seconds)
