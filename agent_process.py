"""Agent process controller: one pseudo-terminal backed process per session.

State machine::

    idle/stopped/completed/failed --start--> running
    running  --pause-->  paused  --resume--> running
    running/paused --stop--> stopped
    running/paused --exit 0--> completed
    running/paused --exit != 0--> failed

Every transition is reported to ``on_status`` and emitted as a ``status``
message through ``on_event``.  Output, status and exit all go out through
the same callback so their relative order is the order they happened in.
"""
from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from typing import Callable, Dict, List, Optional, Sequence

from errors import AgentAlreadyRunningError, InvalidTransitionError
from models import AgentStatus
from session_protocol import (
    ExitMessage,
    FileChangeMessage,
    OutputMessage,
    ProgressMessage,
    ServerMessage,
    StatusMessage,
    TestResultMessage,
)
from terminal_parser import (
    FileHint,
    ParserState,
    ProblemHint,
    ProgressHint,
    TestHint,
    estimate_progress,
    filter_mouse_sequences,
    parse_output,
)

log = logging.getLogger(__name__)

DEFAULT_COLS = 120
DEFAULT_ROWS = 40
OUTPUT_CHUNK_SIZE = 4096
PROGRESS_THRESHOLD = 5
READ_SIZE = 65536
EOF_DRAIN_TIMEOUT = 2.0

START_FROM = {AgentStatus.IDLE, AgentStatus.STOPPED, AgentStatus.COMPLETED, AgentStatus.FAILED}

EventCallback = Callable[[ServerMessage], None]
StatusCallback = Callable[..., None]


def exit_code_from_returncode(returncode: Optional[int]) -> int:
    """Map a Popen return code to a shell-style exit code (signals become 128+N)."""
    if returncode is None:
        return -1
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


def set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def chunk_text(text: str, size: int = OUTPUT_CHUNK_SIZE) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


class AgentProcessController:
    def __init__(
        self,
        session_id: str,
        on_event: Optional[EventCallback] = None,
        on_status: Optional[StatusCallback] = None,
        stop_grace_seconds: float = 5.0,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        parse_hints: bool = True,
    ) -> None:
        self.session_id = session_id
        self.on_event = on_event
        self.on_status = on_status
        self.stop_grace_seconds = stop_grace_seconds
        self.cols = cols
        self.rows = rows
        self.parse_hints = parse_hints

        self.status = AgentStatus.IDLE
        self.exit_code: Optional[int] = None
        self.error: Optional[str] = None

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._master_fd: Optional[int] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._eof: Optional[asyncio.Event] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._parser = ParserState()
        self._last_progress = 0
        self._start_lock = asyncio.Lock()

    # ----- state -----

    @property
    def is_live(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    def _emit(self, message: ServerMessage) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(message)
        except Exception:
            log.exception("event observer failed for %s", self.session_id)

    def _set_status(self, status: AgentStatus) -> None:
        self.status = status
        log.info("session %s -> %s", self.session_id, status.value)
        if self.on_status is not None:
            try:
                self.on_status(status, exit_code=self.exit_code, error=self.error)
            except Exception:
                log.exception("status observer failed for %s", self.session_id)
        self._emit(StatusMessage(running=status is AgentStatus.RUNNING, status=status.value, error=self.error))

    # ----- lifecycle -----

    async def start(
        self,
        command: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> None:
        """Spawn ``command`` under a fresh pseudo-terminal.

        Raises AgentAlreadyRunningError when a process is still live.  Spawn
        failures do not raise: the session moves straight to ``failed`` with
        ``error`` set and no ``exit`` event.
        """
        async with self._start_lock:
            if self.is_live or self.status.is_live:
                raise AgentAlreadyRunningError(f"agent already running for {self.session_id}")
            if self.status not in START_FROM:
                raise InvalidTransitionError(self.status.value, "start")
            if not command:
                raise ValueError("command must not be empty")

            if cols:
                self.cols = cols
            if rows:
                self.rows = rows
            self.exit_code = None
            self.error = None
            self._stop_requested = False
            self._parser = ParserState()
            self._last_progress = 0
            self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

            child_env = dict(os.environ)
            child_env.update(env or {})
            child_env.setdefault("TERM", "xterm-256color")
            child_env.setdefault("COLORTERM", "truecolor")
            child_env["COLUMNS"] = str(self.cols)
            child_env["LINES"] = str(self.rows)

            master_fd, slave_fd = pty.openpty()
            try:
                set_winsize(slave_fd, self.rows, self.cols)
                os.set_blocking(master_fd, False)
                self._proc = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=cwd,
                    env=child_env,
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    start_new_session=True,
                )
            except OSError as exc:
                os.close(master_fd)
                self._proc = None
                self.error = f"failed to spawn {command[0]}: {exc.strerror or exc}"
                log.warning("spawn failed for %s: %s", self.session_id, self.error)
                self._set_status(AgentStatus.FAILED)
                return
            finally:
                os.close(slave_fd)

            self._master_fd = master_fd
            self._eof = asyncio.Event()
            loop = asyncio.get_running_loop()
            loop.add_reader(master_fd, self._on_readable)
            self._set_status(AgentStatus.RUNNING)
            self._exit_task = asyncio.create_task(self._watch_exit(), name=f"agent-exit-{self.session_id}")

    def mark_failed(self, error: str) -> None:
        """Record a failure that happened before any process could be spawned."""
        if self.is_live:
            raise AgentAlreadyRunningError(f"agent already running for {self.session_id}")
        self.exit_code = None
        self.error = error
        self._set_status(AgentStatus.FAILED)

    async def pause(self) -> None:
        if self.status is not AgentStatus.RUNNING:
            raise InvalidTransitionError(self.status.value, "pause")
        self._signal_group(signal.SIGSTOP)
        self._set_status(AgentStatus.PAUSED)

    async def resume(self) -> None:
        if self.status is not AgentStatus.PAUSED:
            raise InvalidTransitionError(self.status.value, "resume")
        self._signal_group(signal.SIGCONT)
        self._set_status(AgentStatus.RUNNING)

    async def stop(self) -> None:
        """Terminate the process, escalating to SIGKILL after the grace period.

        Safe to call when nothing is running.  Returns once the final status
        and exit events have been emitted.
        """
        if not self.is_live:
            if self._exit_task is not None:
                await asyncio.shield(self._exit_task)
            return
        self._stop_requested = True
        if self.status is AgentStatus.PAUSED:
            self._signal_group(signal.SIGCONT)
        self._signal_group(signal.SIGTERM)
        assert self._exit_task is not None
        try:
            await asyncio.wait_for(asyncio.shield(self._exit_task), timeout=self.stop_grace_seconds)
        except asyncio.TimeoutError:
            log.warning("agent %s ignored SIGTERM; killing", self.session_id)
            self._signal_group(signal.SIGKILL)
            await asyncio.shield(self._exit_task)

    async def wait(self) -> Optional[int]:
        if self._exit_task is not None:
            await asyncio.shield(self._exit_task)
        return self.exit_code

    def _signal_group(self, sig: int) -> None:
        if not self.is_live:
            return
        assert self._proc is not None
        try:
            os.killpg(os.getpgid(self._proc.pid), sig)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            log.warning("cannot signal %s for %s: %s", sig, self.session_id, exc)
            try:
                self._proc.send_signal(sig)
            except ProcessLookupError:
                pass

    # ----- I/O -----

    def write(self, data: str) -> bool:
        """Forward input verbatim while running; otherwise drop it."""
        if self.status is not AgentStatus.RUNNING or self._master_fd is None or not data:
            return False
        payload = data.encode("utf-8")
        try:
            while payload:
                written = os.write(self._master_fd, payload)
                payload = payload[written:]
        except BlockingIOError:
            log.debug("pty input buffer full for %s; dropped %d bytes", self.session_id, len(payload))
            return False
        except OSError as exc:
            log.debug("write to %s failed: %s", self.session_id, exc)
            return False
        return True

    def resize(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows
        if self._master_fd is None:
            return
        try:
            set_winsize(self._master_fd, rows, cols)
        except OSError as exc:
            log.debug("resize failed for %s: %s", self.session_id, exc)

    def _on_readable(self) -> None:
        assert self._master_fd is not None
        try:
            data = os.read(self._master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError as exc:
            # EIO once every slave descriptor is closed.
            if exc.errno not in (errno.EIO, errno.EBADF):
                log.debug("pty read error for %s: %s", self.session_id, exc)
            data = b""
        if not data:
            self._close_reader()
            return
        self._handle_output(self._decoder.decode(data))

    def _close_reader(self) -> None:
        if self._master_fd is not None:
            try:
                asyncio.get_running_loop().remove_reader(self._master_fd)
            except (RuntimeError, ValueError):
                pass
        if self._eof is not None:
            self._eof.set()

    def _handle_output(self, text: str) -> None:
        text = filter_mouse_sequences(text)
        if not text:
            return
        for piece in chunk_text(text):
            self._emit(OutputMessage(data=piece))
        if self.parse_hints:
            self._emit_hints(text)

    def _emit_hints(self, text: str) -> None:
        explicit = False
        for hint in parse_output(text, self._parser):
            if isinstance(hint, ProgressHint):
                explicit = True
                self._maybe_progress(hint.progress)
            elif isinstance(hint, FileHint):
                self._emit(FileChangeMessage(action=hint.action, file_path=hint.file_path))
            elif isinstance(hint, ProblemHint):
                log.warning("agent %s reported %s: %s", self.session_id, hint.severity, hint.message)
            elif isinstance(hint, TestHint):
                self._emit(TestResultMessage(passed=hint.passed, failed=hint.failed, total=hint.total))
        if not explicit and self._parser.last_progress == 0:
            estimated = estimate_progress(self._parser)
            if estimated >= self._last_progress + PROGRESS_THRESHOLD:
                self._maybe_progress(estimated)

    def _maybe_progress(self, progress: int) -> None:
        if abs(progress - self._last_progress) < PROGRESS_THRESHOLD:
            return
        self._last_progress = progress
        self._emit(ProgressMessage(progress=progress))

    async def _watch_exit(self) -> None:
        assert self._proc is not None and self._eof is not None
        returncode = await self._proc.wait()
        try:
            await asyncio.wait_for(self._eof.wait(), timeout=EOF_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            # A grandchild still holds the terminal open.
            log.debug("output of %s not closed after exit; dropping remainder", self.session_id)
        self._close_reader()
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._handle_output(tail)
        if self._master_fd is not None:
            os.close(self._master_fd)
            self._master_fd = None

        self.exit_code = exit_code_from_returncode(returncode)
        if self._stop_requested:
            final = AgentStatus.STOPPED
        elif self.exit_code == 0:
            final = AgentStatus.COMPLETED
        else:
            final = AgentStatus.FAILED
        log.info("agent %s exited with %s", self.session_id, self.exit_code)
        self._set_status(final)
        self._emit(ExitMessage(exit_code=self.exit_code))
