import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 75_000
# derpprobe -once runs a full internal probe round before exiting
MIN_ONCE_TIMEOUT_MS = 65_000
READ_CHUNK_BYTES = 4096
KILL_GRACE_SECONDS = 5.0  # after SIGTERM, before SIGKILL


# --- Argument assembly ---

def _is_json_flag(token: str) -> bool:
    return token in ("-json", "--json") or token.startswith("--json=") or token.startswith("-json=")


def parse_args(args_text: str, keep_json: bool = False) -> List[str]:
    """Split DERPPROBE_ARGS. Empty means a single -once run."""
    if not args_text.strip():
        return ["-once"]
    tokens = [token.strip() for token in args_text.split(" ") if token.strip()]
    if keep_json:
        return tokens
    return [token for token in tokens if not _is_json_flag(token)]


def has_flag(args: List[str], name: str) -> bool:
    for token in args:
        if token in (f"-{name}", f"--{name}"):
            return True
        if token.startswith(f"-{name}=") or token.startswith(f"--{name}="):
            return True
    return False


def append_derp_map_arg(args: List[str], derp_map: Optional[str]) -> List[str]:
    if not derp_map or not derp_map.strip():
        return args
    if has_flag(args, "derp-map"):
        return args
    return [*args, "-derp-map", derp_map.strip()]


def resolve_timeout_ms(base_timeout_ms: int, args: List[str]) -> int:
    if has_flag(args, "once") and base_timeout_ms < MIN_ONCE_TIMEOUT_MS:
        return MIN_ONCE_TIMEOUT_MS
    return base_timeout_ms


# --- Process execution ---

class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    LAUNCH_FAILED = "launch_failed"


@dataclass
class ProcessOutcome:
    kind: OutcomeKind
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None


async def _drain(stream: asyncio.StreamReader, chunks: List[bytes]):
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return
        chunks.append(chunk)


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


class ProcessSupervisor:
    """
    Runs the probe binary once and reports exactly one outcome:
    completed, timed out (child gets SIGTERM, then SIGKILL after a grace
    period) or failed to launch.
    Output is buffered and only decoded once the outcome is known.
    """

    def __init__(self, capture_stdout: bool = False, spawn=asyncio.create_subprocess_exec,
                 kill_grace_seconds: float = KILL_GRACE_SECONDS):
        self.capture_stdout = capture_stdout
        self.kill_grace_seconds = kill_grace_seconds
        self._spawn = spawn
        self._reaping = set()

    async def run(self, command: str, args: List[str], timeout_ms: int) -> ProcessOutcome:
        try:
            proc = await self._spawn(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if self.capture_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=os.environ.copy(),
            )
        except OSError as e:
            log.warning(f"Could not start {command}: {e}")
            return ProcessOutcome(kind=OutcomeKind.LAUNCH_FAILED, error=str(e))

        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        readers = []
        if proc.stderr is not None:
            readers.append(asyncio.ensure_future(_drain(proc.stderr, stderr_chunks)))
        if proc.stdout is not None:
            readers.append(asyncio.ensure_future(_drain(proc.stdout, stdout_chunks)))

        kind = OutcomeKind.COMPLETED
        try:
            await asyncio.wait_for(asyncio.gather(*readers, proc.wait()), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            kind = OutcomeKind.TIMED_OUT
            log.warning(f"{command} did not finish within {timeout_ms}ms, sending SIGTERM")
            self._terminate(proc)
            self._reap(proc)
        except asyncio.CancelledError:
            self._terminate(proc)
            self._reap(proc)
            raise
        finally:
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

        exit_code = None
        if kind is OutcomeKind.COMPLETED:
            exit_code = proc.returncode
            # negative means killed by that signal, which is not an exit code
            if exit_code is not None and exit_code < 0:
                log.warning(f"{command} was killed by signal {-exit_code}")
                exit_code = None

        return ProcessOutcome(
            kind=kind,
            exit_code=exit_code,
            stdout=_decode(stdout_chunks),
            stderr=_decode(stderr_chunks),
        )

    @staticmethod
    def _terminate(proc):
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

    def _reap(self, proc):
        task = asyncio.ensure_future(self._wait_or_kill(proc))
        self._reaping.add(task)
        task.add_done_callback(self._reaping.discard)

    async def _wait_or_kill(self, proc):
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            log.warning(f"pid {proc.pid} ignored SIGTERM, sending SIGKILL")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    async def wait_reaped(self):
        """Wait for processes terminated after a timeout to be collected."""
        if self._reaping:
            await asyncio.gather(*list(self._reaping), return_exceptions=True)
