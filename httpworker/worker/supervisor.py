"""Process supervisor - spawns a guest and hands back a ready WorkerHandle.

Responsibilities:
- Build the guest command line and its permission flags
- Race socket readiness against the guest exiting early
- Warm the connection pool before the first real request
- Route a later guest exit into the handle's termination routine
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .errors import EarlyExitError
from .flags import build_run_flags
from .handle import WorkerHandle
from .protocol import (
    DEFAULT_BOOTSTRAP_MODULE,
    SCRIPT_KIND_IMPORT,
    SCRIPT_KIND_SCRIPT,
    ExitRecord,
)
from .utils import (
    OutputCapture,
    exit_record_from_returncode,
    force_kill,
    get_python_for_env,
    make_socket_path,
    remove_socket_file,
)
from ..config import get_guest_python, get_ready_poll_interval

logger = logging.getLogger(__name__)

SpawnFunc = Callable[..., Awaitable[asyncio.subprocess.Process]]

# How long an early exit waits for the rest of the guest's output.
OUTPUT_DRAIN_TIMEOUT = 1.0

Script = Union[str, "os.PathLike[str]"]


@dataclass
class WorkerOptions:
    """Configuration for spawning a guest."""

    executable: Optional[Union[str, List[str]]] = None  # Default: guest python from config
    bootstrap_module: str = DEFAULT_BOOTSTRAP_MODULE
    run_flags: List[str] = field(default_factory=list)
    python_env: Optional[str] = None  # Named venv, used when executable is unset
    env: Dict[str, str] = field(default_factory=dict)  # Extra environment
    socket_dir: Optional[Path] = None
    print_output: bool = False
    print_command_and_arguments: bool = False
    on_spawn: Optional[Callable[[asyncio.subprocess.Process], None]] = None
    spawn: SpawnFunc = asyncio.create_subprocess_exec


def resolve_script(script: Script) -> Tuple[str, str, Optional[str]]:
    """
    Work out how the guest should load ``script``.

    Returns:
        (script_kind, script_body, script_path) where script_path is the file
        to grant read access to, or None for inline source
    """
    if isinstance(script, str):
        return SCRIPT_KIND_SCRIPT, script, None
    if isinstance(script, os.PathLike):
        path = Path(script).resolve()
        return SCRIPT_KIND_IMPORT, path.as_uri(), str(path)
    raise TypeError(f"script must be source text or a path, not {type(script).__name__}")


def build_command(
    options: WorkerOptions, run_flags: List[str], script_args: List[str]
) -> Tuple[str, List[str]]:
    """Split the guest command into (program, args)."""
    executable = options.executable
    if executable is None:
        if options.python_env:
            executable = [get_python_for_env(options.python_env)]
        else:
            executable = [get_guest_python()]
    elif isinstance(executable, str):
        executable = [executable]

    if len(executable) == 0:
        raise ValueError("executable must not be an empty list")

    args = [
        *executable[1:],
        "-m",
        options.bootstrap_module,
        *run_flags,
        "--",
        *script_args,
    ]
    return executable[0], args


def _build_env(options: WorkerOptions) -> Dict[str, str]:
    env = os.environ.copy()
    env.setdefault("PYTHONUNBUFFERED", "1")
    env.setdefault("PYTHONDONTWRITEBYTECODE", "1")
    env.update(options.env)
    return env


class _Launch:
    """
    State of one launch while the guest races to readiness.

    ``running`` flips once the WorkerHandle exists, ``exited`` once the
    process exit is observed. The exit observer reads ``running`` to decide
    between failing the launch and terminating the worker.
    """

    def __init__(
        self,
        socket_path: str,
        process: asyncio.subprocess.Process,
        stdout: OutputCapture,
        stderr: OutputCapture,
    ):
        self.socket_path = socket_path
        self.process = process
        self.stdout = stdout
        self.stderr = stderr

        self.running = False
        self.exited = False
        self.worker: Optional[WorkerHandle] = None

    async def observe_exit(self) -> Optional[ExitRecord]:
        """
        Exit observer, started right after spawn.

        Returns the ExitRecord when the guest died before the worker was
        running, otherwise hands it to the worker's termination routine.
        """
        returncode = await self.process.wait()
        await asyncio.gather(
            self.stdout.wait_closed(OUTPUT_DRAIN_TIMEOUT),
            self.stderr.wait_closed(OUTPUT_DRAIN_TIMEOUT),
        )
        self.exited = True
        record = exit_record_from_returncode(returncode)

        if not self.running:
            remove_socket_file(self.socket_path)
            return record

        if self.worker is None:
            raise RuntimeError("Guest marked running without a worker handle")
        await self.worker._terminate(record)
        return None

    async def wait_for_socket(self, interval: float) -> None:
        """Poll until the socket file exists. Cancelled if the guest exits first."""
        while not self.exited:
            if os.path.exists(self.socket_path):
                return
            await asyncio.sleep(interval)

    def early_exit_error(self, record: ExitRecord) -> EarlyExitError:
        return EarlyExitError(
            "Guest exited before being ready",
            stdout=self.stdout.text(),
            stderr=self.stderr.text(),
            exit_code=record.exit_code,
            signal=record.signal,
        )


async def launch_worker(script: Script, options: Optional[WorkerOptions] = None) -> WorkerHandle:
    """
    Spawn a guest for ``script`` and wait until it serves requests.

    Args:
        script: Handler source text, or a path to a handler file
        options: Spawn configuration

    Returns:
        A running WorkerHandle

    Raises:
        EarlyExitError: If the guest exits before its socket is ready
        ValueError: If the executable option is an empty list
    """
    options = options or WorkerOptions()
    socket_path = make_socket_path(options.socket_dir)
    script_kind, script_body, script_path = resolve_script(script)

    run_flags = build_run_flags(options.run_flags, socket_path, script_path)
    command, args = build_command(options, run_flags, [socket_path, script_kind, script_body])

    if options.print_command_and_arguments:
        logger.info(f"Spawning guest process: {[command, *args]}")

    process = await options.spawn(
        command,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_build_env(options),
    )

    stdout = OutputCapture("stdout", print_output=options.print_output)
    stderr = OutputCapture("stderr", print_output=options.print_output)
    stdout.start(process.stdout)
    stderr.start(process.stderr)

    launch = _Launch(socket_path, process, stdout, stderr)
    observer = asyncio.create_task(launch.observe_exit())

    if options.on_spawn is not None:
        options.on_spawn(process)

    interval = get_ready_poll_interval()
    ready = asyncio.create_task(launch.wait_for_socket(interval))

    try:
        await asyncio.wait({ready, observer}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        # Launch cancelled by the caller: take the guest down with it.
        ready.cancel()
        force_kill(process)
        remove_socket_file(socket_path)
        raise

    if observer.done() or launch.exited or not ready.done():
        ready.cancel()
        record = await observer
        if record is None:
            raise RuntimeError(f"Guest {process.pid} exit was handed to a worker that does not exist")
        raise launch.early_exit_error(record)

    worker = WorkerHandle(socket_path, process, stdout, stderr)
    launch.worker = worker
    launch.running = True
    worker._exit_observer = observer

    logger.info(f"Guest {process.pid} listening on {socket_path}")

    try:
        await worker.warm_up(interval)
    except BaseException:
        await worker.terminate()
        raise

    return worker
