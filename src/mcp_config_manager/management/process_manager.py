"""Process control for MCP server child processes."""

import asyncio
import inspect
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from ..config.logging import get_logger
from ..domain.models import Server

logger = get_logger(__name__)

ExitCallback = Callable[[str, Optional[int]], Union[Awaitable[Any], Any]]


class ProcessError(Exception):
    """Base exception for process control failures."""

    def __init__(
        self,
        message: str,
        server_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        self.server_id = server_id
        self.cause = cause
        super().__init__(message)


class ProcessStartError(ProcessError):
    """Raised when a server process cannot be spawned or dies during startup."""


class ProcessStopError(ProcessError):
    """Raised when a server process cannot be stopped."""


@dataclass
class ProcessInfo:
    server_id: str
    pid: int
    port: Optional[int] = None
    started_at: float = field(default_factory=time.time)

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at


class ProcessManager(ABC):
    """Contract the service relies on for spawning and stopping servers.

    ``start`` returns only once the process is confirmed alive and
    ``stop`` only once it has exited. Exits that were not requested through
    ``stop`` are reported to the callbacks registered with :meth:`on_exit`.
    """

    def __init__(self):
        self._exit_callbacks: List[ExitCallback] = []

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    async def _report_exit(self, server_id: str, exit_code: Optional[int]) -> None:
        for callback in list(self._exit_callbacks):
            try:
                result = callback(server_id, exit_code)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Process exit callback failed", server_id=server_id, error=str(e)
                )

    @abstractmethod
    async def start(self, server: Server) -> ProcessInfo:
        ...

    @abstractmethod
    async def stop(self, server_id: str) -> None:
        ...

    @abstractmethod
    def is_running(self, server_id: str) -> bool:
        ...

    @abstractmethod
    def get_process(self, server_id: str) -> Optional[ProcessInfo]:
        ...


class SubprocessProcessManager(ProcessManager):
    """Runs each server as an asyncio subprocess in its own session."""

    def __init__(
        self,
        start_timeout: float = 10.0,
        stop_timeout: float = 30.0,
        startup_grace: float = 0.5,
        log_dir: Optional[Path] = None,
    ):
        super().__init__()
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout
        self.startup_grace = startup_grace
        self.log_dir = log_dir
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._info: Dict[str, ProcessInfo] = {}
        self._watchers: Dict[str, "asyncio.Task[None]"] = {}
        self._stopping: Set[str] = set()

    async def start(self, server: Server) -> ProcessInfo:
        server_id = str(server.id)
        if self.is_running(server_id):
            raise ProcessStartError("Process is already running", server_id)

        config = server.configuration
        env = os.environ.copy()
        env.update(config.environment)

        stdout, stderr = self._open_logs(server_id)
        try:
            process = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    str(config.command),
                    *config.args,
                    env=env,
                    cwd=config.working_directory or None,
                    # stdio servers exit on stdin EOF, so keep a pipe open
                    stdin=asyncio.subprocess.PIPE,
                    stdout=stdout,
                    stderr=stderr,
                    start_new_session=True,
                ),
                self.start_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProcessStartError(
                f"Process did not start within {self.start_timeout}s", server_id, e
            )
        except OSError as e:
            raise ProcessStartError(
                f"Failed to spawn '{config.command}': {str(e)}", server_id, e
            )
        finally:
            for handle in (stdout, stderr):
                if hasattr(handle, "close"):
                    handle.close()

        # Wait a moment to check the process survived startup
        await asyncio.sleep(self.startup_grace)
        if process.returncode is not None:
            raise ProcessStartError(
                f"Process exited during startup with code {process.returncode}",
                server_id,
            )

        info = ProcessInfo(server_id=server_id, pid=process.pid)
        self._processes[server_id] = process
        self._info[server_id] = info
        self._watchers[server_id] = asyncio.create_task(self._watch(server_id, process))

        logger.info(
            "Server process started",
            server_id=server_id,
            pid=process.pid,
            command=str(config.command),
        )
        return info

    async def stop(self, server_id: str) -> None:
        server_id = str(server_id)
        process = self._processes.get(server_id)
        if process is None or process.returncode is not None:
            self._forget(server_id)
            raise ProcessStopError("Process is not running", server_id)

        self._stopping.add(server_id)
        try:
            # Send SIGTERM for graceful shutdown
            try:
                process.terminate()
            except ProcessLookupError:
                pass

            try:
                await asyncio.wait_for(process.wait(), self.stop_timeout)
                logger.info("Server process stopped gracefully", server_id=server_id)
            except asyncio.TimeoutError:
                logger.warning("Forcing server process shutdown", server_id=server_id)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        except OSError as e:
            raise ProcessStopError(f"Failed to stop process: {str(e)}", server_id, e)
        finally:
            self._stopping.discard(server_id)

        watcher = self._watchers.get(server_id)
        if watcher is not None:
            await asyncio.gather(watcher, return_exceptions=True)
        self._forget(server_id)

    def is_running(self, server_id: str) -> bool:
        process = self._processes.get(str(server_id))
        return process is not None and process.returncode is None

    def get_process(self, server_id: str) -> Optional[ProcessInfo]:
        if not self.is_running(server_id):
            return None
        return self._info.get(str(server_id))

    async def stop_all(self) -> None:
        """Stop every tracked process, logging failures."""
        for server_id in list(self._processes):
            try:
                await self.stop(server_id)
            except ProcessStopError as e:
                logger.warning(
                    "Failed to stop server process", server_id=server_id, error=e.message
                )

    async def _watch(self, server_id: str, process: asyncio.subprocess.Process) -> None:
        exit_code = await process.wait()
        if server_id in self._stopping:
            return
        logger.warning(
            "Server process exited unexpectedly", server_id=server_id, exit_code=exit_code
        )
        self._forget(server_id)
        await self._report_exit(server_id, exit_code)

    def _forget(self, server_id: str) -> None:
        self._processes.pop(server_id, None)
        self._info.pop(server_id, None)
        self._watchers.pop(server_id, None)

    def _open_logs(self, server_id: str):
        if self.log_dir is None:
            return asyncio.subprocess.DEVNULL, asyncio.subprocess.DEVNULL
        stdout = None
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            stdout = open(self.log_dir / f"{server_id}.out", "a")
            stderr = open(self.log_dir / f"{server_id}.err", "a")
        except OSError as e:
            if stdout is not None:
                stdout.close()
            raise ProcessStartError(
                f"Cannot open process logs in {self.log_dir}: {str(e)}", server_id, e
            )
        return stdout, stderr
