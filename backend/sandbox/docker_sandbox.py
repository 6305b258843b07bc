"""Docker-based sandbox provider for generated apps.

This module provides the SandboxProvider class that manages Docker
containers where the code agent writes and runs the generated Next.js app.
Sandboxes are addressed by an opaque ID and live for a fixed idle timeout;
once it lapses the container is reaped and the sandbox must be recreated
from the stored files (see ``sandbox.lifecycle``).
"""

import asyncio
import os
import tarfile
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from io import BytesIO
from typing import Any

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from config import settings
from sandbox.security import (
    relative_to_workdir,
    sanitize_output,
    validate_command,
    validate_path,
)

logger = structlog.get_logger()

# Blocking docker calls are bounded so a wedged daemon cannot stall a run
DOCKER_CALL_TIMEOUT_SECONDS = 30


class SandboxUnavailableError(Exception):
    """The sandbox is missing, stopped, or past its idle deadline."""


@dataclass
class SandboxInfo:
    """Information about a live sandbox container."""

    sandbox_id: str
    container_id: str
    host_port: int
    workdir: str
    expires_at: float
    status: str = "running"
    timeout_seconds: int = 0

    def touch(self) -> None:
        """Push the idle deadline to now + ``timeout_seconds``."""
        self.expires_at = max(self.expires_at, time.time() + self.timeout_seconds)


@dataclass
class CommandResult:
    """Result of executing a command in the sandbox."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


# Container security configuration
CONTAINER_CONFIG: dict[str, object] = {
    "mem_limit": "2048m",
    "cpu_period": 100000,
    "cpu_quota": 100000,  # one CPU core; next dev builds are CPU heavy
    "network_mode": "bridge",  # npm install needs the registry
    "security_opt": ["no-new-privileges"],
    "cap_drop": ["ALL"],
    "cap_add": ["CHOWN", "SETUID", "SETGID"],
    "user": "user",
}


class SandboxProvider:
    """Manages Docker sandbox lifecycles for the code agent.

    The image is expected to start the Next.js dev server on
    ``preview_port`` inside ``workdir`` as its default command, so a fresh
    container serves a preview without further setup.

    Attributes:
        image_name: The Docker image to use for sandbox containers.
        workdir: Working directory of the app inside the container.
        preview_port: Container port the dev server listens on.
        public_host: Host name used when building preview URLs.
        max_sandboxes: Maximum number of concurrent sandboxes allowed.
    """

    def __init__(
        self,
        image_name: str | None = None,
        workdir: str | None = None,
        preview_port: int | None = None,
        public_host: str | None = None,
        max_sandboxes: int | None = None,
    ) -> None:
        self.image_name = image_name or settings.sandbox_image
        self.workdir = workdir or settings.sandbox_workdir
        self.preview_port = preview_port or settings.sandbox_preview_port
        self.public_host = public_host or settings.sandbox_public_host
        self.max_sandboxes = max_sandboxes or settings.max_concurrent_sandboxes
        self._client: docker.DockerClient | None = None
        self._sandboxes: dict[str, SandboxInfo] = {}
        self._lock = asyncio.Lock()

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def _run_blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(None, func, *args),
            timeout=DOCKER_CALL_TIMEOUT_SECONDS,
        )

    @staticmethod
    def _container_name(sandbox_id: str) -> str:
        return f"sandbox-{sandbox_id}"

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def create(self, timeout_seconds: int | None = None) -> SandboxInfo:
        """Create and start a new sandbox container.

        Args:
            timeout_seconds: Idle timeout; defaults to the configured value.

        Returns:
            SandboxInfo for the running container.

        Raises:
            RuntimeError: If container creation fails or max sandboxes reached.
        """
        async with self._lock:
            if len(self._sandboxes) >= self.max_sandboxes:
                raise RuntimeError(f"Maximum sandboxes ({self.max_sandboxes}) reached")

        sandbox_id = f"sbx_{uuid.uuid4().hex[:12]}"
        timeout_seconds = timeout_seconds or settings.sandbox_timeout_seconds

        try:
            container_id, host_port = await self._run_blocking(
                self._create_container, sandbox_id
            )
        except (APIError, ImageNotFound, TimeoutError) as e:
            logger.error("sandbox_creation_failed", sandbox_id=sandbox_id, error=str(e))
            raise RuntimeError(f"Failed to create sandbox: {e}") from e

        sandbox_info = SandboxInfo(
            sandbox_id=sandbox_id,
            container_id=container_id,
            host_port=host_port,
            workdir=self.workdir,
            expires_at=time.time() + timeout_seconds,
            timeout_seconds=timeout_seconds,
        )
        async with self._lock:
            self._sandboxes[sandbox_id] = sandbox_info

        logger.info(
            "sandbox_created",
            sandbox_id=sandbox_id,
            container_id=container_id[:12],
            host_port=host_port,
        )
        return sandbox_info

    def _create_container(self, sandbox_id: str) -> tuple[str, int]:
        """Run the container and read back its published port (blocking)."""
        container = self.client.containers.run(
            self.image_name,
            name=self._container_name(sandbox_id),
            detach=True,
            remove=False,
            ports={f"{self.preview_port}/tcp": None},
            mem_limit=CONTAINER_CONFIG["mem_limit"],
            cpu_period=CONTAINER_CONFIG["cpu_period"],
            cpu_quota=CONTAINER_CONFIG["cpu_quota"],
            network_mode=CONTAINER_CONFIG["network_mode"],
            security_opt=CONTAINER_CONFIG["security_opt"],
            cap_drop=CONTAINER_CONFIG["cap_drop"],
            cap_add=CONTAINER_CONFIG["cap_add"],
            user=CONTAINER_CONFIG["user"],
            working_dir=self.workdir,
            labels={"sitesmith.sandbox_id": sandbox_id},
            environment={
                "NODE_ENV": "development",
                "PORT": str(self.preview_port),
            },
        )
        container.reload()
        return container.id, self._published_port(container)

    def _published_port(self, container: docker.models.containers.Container) -> int:
        ports = container.attrs.get("NetworkSettings", {}).get("Ports") or {}
        bindings = ports.get(f"{self.preview_port}/tcp") or []
        if not bindings:
            raise APIError(f"Port {self.preview_port} is not published")
        return int(bindings[0]["HostPort"])

    async def connect(self, sandbox_id: str) -> SandboxInfo:
        """Reconnect to an existing sandbox.

        Sandboxes created by an earlier process are re-attached by container
        name and get a fresh idle deadline.

        Raises:
            SandboxUnavailableError: If the container is gone, stopped, or
                its idle deadline has passed.
        """
        known = self._sandboxes.get(sandbox_id)
        if known is not None and known.expires_at <= time.time():
            raise SandboxUnavailableError(f"Sandbox '{sandbox_id}' has expired")

        try:
            container_id, host_port, status = await self._run_blocking(
                self._inspect_container, sandbox_id
            )
        except NotFound as e:
            async with self._lock:
                self._sandboxes.pop(sandbox_id, None)
            raise SandboxUnavailableError(f"Sandbox '{sandbox_id}' not found") from e
        except (DockerException, TimeoutError) as e:
            raise SandboxUnavailableError(f"Sandbox '{sandbox_id}' unreachable: {e}") from e

        if status != "running":
            raise SandboxUnavailableError(f"Sandbox '{sandbox_id}' is {status}")

        if known is None:
            known = SandboxInfo(
                sandbox_id=sandbox_id,
                container_id=container_id,
                host_port=host_port,
                workdir=self.workdir,
                expires_at=time.time() + settings.sandbox_timeout_seconds,
                timeout_seconds=settings.sandbox_timeout_seconds,
            )
            async with self._lock:
                self._sandboxes[sandbox_id] = known
            logger.info("sandbox_reattached", sandbox_id=sandbox_id, host_port=host_port)

        return known

    def _inspect_container(self, sandbox_id: str) -> tuple[str, int, str]:
        container = self.client.containers.get(self._container_name(sandbox_id))
        if container.status != "running":
            return container.id, 0, container.status
        return container.id, self._published_port(container), container.status

    async def set_timeout(self, sandbox_id: str, timeout_seconds: int) -> None:
        """Reset the idle deadline of a sandbox to now + ``timeout_seconds``."""
        sandbox_info = self._get_sandbox(sandbox_id)
        sandbox_info.timeout_seconds = timeout_seconds
        sandbox_info.expires_at = time.time() + timeout_seconds
        logger.debug(
            "sandbox_timeout_set",
            sandbox_id=sandbox_id,
            timeout_seconds=timeout_seconds,
        )

    async def kill(self, sandbox_id: str) -> None:
        """Stop and remove a sandbox container. Unknown sandboxes are ignored."""
        async with self._lock:
            self._sandboxes.pop(sandbox_id, None)

        try:
            await self._run_blocking(self._destroy_container, sandbox_id)
            logger.info("sandbox_killed", sandbox_id=sandbox_id)
        except APIError as e:
            logger.error("sandbox_kill_failed", sandbox_id=sandbox_id, error=str(e))
            raise

    def _destroy_container(self, sandbox_id: str) -> None:
        """Stop and remove a container (blocking operation)."""
        try:
            container = self.client.containers.get(self._container_name(sandbox_id))
            container.stop(timeout=5)
            container.remove(force=True)
        except NotFound:
            pass  # Already removed

    async def reap_expired(self) -> list[str]:
        """Kill every tracked sandbox whose idle deadline has passed."""
        now = time.time()
        async with self._lock:
            expired = [
                sandbox_id
                for sandbox_id, info in self._sandboxes.items()
                if info.expires_at <= now
            ]

        for sandbox_id in expired:
            try:
                await self.kill(sandbox_id)
            except Exception as e:
                logger.error("sandbox_reap_failed", sandbox_id=sandbox_id, error=str(e))

        if expired:
            logger.info("sandboxes_reaped", count=len(expired))
        return expired

    async def start_reaper_loop(
        self, interval_seconds: float | None = None
    ) -> asyncio.Task[None]:
        """Start a background task that periodically reaps expired sandboxes.

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """
        interval = interval_seconds or settings.sandbox_reap_interval_seconds

        async def _loop() -> None:
            logger.info("sandbox_reaper_started", interval_seconds=interval)
            while True:
                try:
                    await asyncio.sleep(interval)
                    await self.reap_expired()
                except asyncio.CancelledError:
                    logger.info("sandbox_reaper_stopped")
                    return
                except Exception as e:
                    logger.error("sandbox_reaper_error", error=str(e))

        return asyncio.create_task(_loop(), name="sandbox_reaper")

    # -----------------------------------------------------------------
    # Files and commands
    # -----------------------------------------------------------------

    async def write_file(self, sandbox_id: str, path: str, content: str) -> str:
        """Write a file inside the sandbox workdir.

        Creates parent directories automatically.

        Returns:
            The path relative to the workdir, used as the files-map key.

        Raises:
            KeyError: If the sandbox is not connected.
            ValueError: If path validation fails.
        """
        sandbox_info = self._get_active_sandbox(sandbox_id)

        is_valid, error_msg, resolved_path = validate_path(sandbox_info.workdir, path)
        if not is_valid:
            raise ValueError(error_msg)

        relative_path = relative_to_workdir(sandbox_info.workdir, resolved_path)
        await self._run_blocking(
            self._write_file_to_container,
            sandbox_info.container_id,
            sandbox_info.workdir,
            relative_path,
            content,
        )

        logger.debug("file_written", sandbox_id=sandbox_id, path=relative_path)
        return relative_path

    def _write_file_to_container(
        self, container_id: str, workdir: str, relative_path: str, content: str
    ) -> None:
        """Write file to container using a tar archive (blocking operation)."""
        container = self.client.containers.get(container_id)

        parent_dir = os.path.dirname(relative_path)
        if parent_dir:
            container.exec_run(
                ["mkdir", "-p", f"{workdir}/{parent_dir}"],
                user=CONTAINER_CONFIG["user"],
            )

        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            file_data = content.encode("utf-8")
            tarinfo = tarfile.TarInfo(name=relative_path)
            tarinfo.size = len(file_data)
            tarinfo.mode = 0o644
            tarinfo.mtime = int(time.time())
            tar.addfile(tarinfo, BytesIO(file_data))

        tar_stream.seek(0)
        if not container.put_archive(workdir, tar_stream):
            raise OSError(f"Failed to write {relative_path}")

        container.exec_run(
            ["chown", f"{CONTAINER_CONFIG['user']}:{CONTAINER_CONFIG['user']}",
             f"{workdir}/{relative_path}"],
            user="root",
        )

    async def read_file(self, sandbox_id: str, path: str) -> str:
        """Read a file from the sandbox workdir.

        Raises:
            KeyError: If the sandbox is not connected.
            ValueError: If path validation fails.
            FileNotFoundError: If file doesn't exist.
        """
        sandbox_info = self._get_active_sandbox(sandbox_id)

        is_valid, error_msg, resolved_path = validate_path(sandbox_info.workdir, path)
        if not is_valid:
            raise ValueError(error_msg)

        return await self._run_blocking(
            self._read_file_from_container,
            sandbox_info.container_id,
            resolved_path,
        )

    def _read_file_from_container(self, container_id: str, absolute_path: str) -> str:
        """Read file from container using a tar archive (blocking operation)."""
        container = self.client.containers.get(container_id)

        try:
            bits, _ = container.get_archive(absolute_path)
        except NotFound as err:
            raise FileNotFoundError(f"File not found: {absolute_path}") from err

        tar_stream = BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        tar_stream.seek(0)

        with tarfile.open(fileobj=tar_stream, mode="r") as tar:
            member = tar.getmembers()[0]
            extracted = tar.extractfile(member)
            if extracted is None:
                raise FileNotFoundError(f"Cannot read file: {absolute_path}")
            return extracted.read().decode("utf-8")

    async def run_command(
        self, sandbox_id: str, command: str, timeout: int | None = None
    ) -> CommandResult:
        """Execute a shell command inside the sandbox workdir.

        Args:
            sandbox_id: The sandbox to execute in.
            command: The shell command to run.
            timeout: Maximum execution time in seconds.

        Returns:
            CommandResult with stdout, stderr, and exit code.

        Raises:
            KeyError: If the sandbox is not connected.
        """
        sandbox_info = self._get_active_sandbox(sandbox_id)
        timeout = timeout or settings.tool_timeout_seconds

        is_valid, error_msg = validate_command(command)
        if not is_valid:
            return CommandResult(
                stdout="",
                stderr=f"Command rejected: {error_msg}",
                exit_code=1,
            )

        try:
            result = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None,
                    self._execute_in_container,
                    sandbox_info.container_id,
                    sandbox_info.workdir,
                    command,
                ),
                timeout=timeout,
            )
        except TimeoutError:
            logger.warning(
                "command_timeout",
                sandbox_id=sandbox_id,
                command=command[:50],
                timeout=timeout,
            )
            return CommandResult(
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                exit_code=124,
                timed_out=True,
            )

        logger.debug(
            "command_executed",
            sandbox_id=sandbox_id,
            command=command[:50],
            exit_code=result.exit_code,
        )
        return result

    def _execute_in_container(
        self, container_id: str, workdir: str, command: str
    ) -> CommandResult:
        """Execute command in container (blocking operation)."""
        container = self.client.containers.get(container_id)

        result = container.exec_run(
            ["/bin/bash", "-lc", command],
            user=CONTAINER_CONFIG["user"],
            workdir=workdir,
            demux=True,
        )

        stdout_bytes: bytes = b""
        stderr_bytes: bytes = b""
        if isinstance(result.output, tuple):
            stdout_bytes = result.output[0] or b""
            stderr_bytes = result.output[1] or b""
        elif result.output:
            stdout_bytes = result.output

        return CommandResult(
            stdout=sanitize_output(stdout_bytes.decode("utf-8", errors="replace")),
            stderr=sanitize_output(stderr_bytes.decode("utf-8", errors="replace")),
            exit_code=result.exit_code,
        )

    async def get_host(self, sandbox_id: str, port: int | None = None) -> str:
        """Return the preview URL of a sandbox's dev server.

        Raises:
            KeyError: If the sandbox is not connected.
        """
        sandbox_info = self._get_sandbox(sandbox_id)
        if port is not None and port != self.preview_port:
            raise ValueError(f"Only port {self.preview_port} is published")
        return f"http://{self.public_host}:{sandbox_info.host_port}"

    # -----------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------

    def _get_sandbox(self, sandbox_id: str) -> SandboxInfo:
        """Get sandbox info or raise KeyError."""
        if sandbox_id not in self._sandboxes:
            raise KeyError(f"Sandbox '{sandbox_id}' not found")
        return self._sandboxes[sandbox_id]

    def _get_active_sandbox(self, sandbox_id: str) -> SandboxInfo:
        """Get sandbox info for workspace activity, refreshing its idle deadline."""
        sandbox_info = self._get_sandbox(sandbox_id)
        sandbox_info.touch()
        return sandbox_info

    def is_docker_available(self) -> bool:
        """Check if the Docker daemon is reachable."""
        try:
            self.client.ping()
            return True
        except Exception:
            return False

    def get_active_sandbox_count(self) -> int:
        """Return the number of currently tracked sandboxes."""
        return len(self._sandboxes)
