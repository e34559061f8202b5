"""PTY-backed process supervision

Runs one interactive CLI per session inside a pseudo-terminal and turns its
output into debounced, cleaned notifications:
- Raw pty reads are accumulated and checked for confirmation prompts
- Output is emitted after a short quiet period with control sequences removed
- Termination asks politely first, then kills the process group at a deadline
"""
import asyncio
import codecs
import fcntl
import os
import pty
import shlex
import signal
import struct
import subprocess
import termios
from typing import Callable, Dict, List, Optional, Union

import structlog

from threadwire.config import Settings, get_settings
from threadwire.exceptions import SpawnError
from threadwire.models.session import ControlKey, ProcessStatus
from threadwire.services.output_parser import detect_prompt, strip_control_sequences
from threadwire.utils.signals import Signal
from threadwire.utils.timers import ScheduledTask, cancel, schedule


logger = structlog.get_logger(__name__)

READ_SIZE = 4096
EXIT_DIRECTIVE = "/exit\n"


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); makes the pty slave (fd 0) the
    # controlling terminal so an ETX byte is delivered as SIGINT.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class ProcessWrapper:
    """One supervised process attached to a pseudo-terminal.

    Status moves ``starting -> ready -> busy <-> ready`` and ends in
    ``terminated`` from any state. Notifications are exposed as signals:
    ``on_output(text)``, ``on_raw_output(text)``, ``on_prompt(text)``,
    ``on_exit(exit_code)`` and ``on_ready()``.
    """

    def __init__(
        self,
        session_id: str,
        project_path: str,
        command: Optional[List[str]] = None,
        settings: Optional[Settings] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        settings = settings or get_settings()
        self.session_id = session_id
        self.project_path = project_path
        self.command = command or shlex.split(settings.process_command)
        self.cols = settings.process_cols
        self.rows = settings.process_rows
        self.output_debounce = settings.output_debounce_seconds
        self.ready_delay = settings.ready_delay_seconds
        self.kill_timeout = settings.kill_timeout_seconds
        self.extra_env = env or {}

        self.on_output: Signal[Callable[[str], object]] = Signal("output")
        self.on_raw_output: Signal[Callable[[str], object]] = Signal("raw_output")
        self.on_prompt: Signal[Callable[[str], object]] = Signal("prompt")
        self.on_exit: Signal[Callable[[Optional[int]], object]] = Signal("exit")
        self.on_ready: Signal[Callable[[], object]] = Signal("ready")

        self._status = ProcessStatus.STARTING
        self._process: Optional[asyncio.subprocess.Process] = None
        self._master_fd = -1
        self._pgid = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending_input = bytearray()
        self._writer_registered = False

        # Output accumulator
        self._buffer = ""
        self._debounce_timer: Optional[ScheduledTask] = None
        self._ready_timer: Optional[ScheduledTask] = None

        self._exit_watcher: Optional[asyncio.Task] = None
        self._termination: Optional[asyncio.Future] = None
        self._exit_waiter: Optional[asyncio.Future] = None
        self._exit_handled = False
        self.exit_code: Optional[int] = None

        self._log = logger.bind(session_id=session_id)

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def is_alive(self) -> bool:
        return (
            self._process is not None
            and not self._exit_handled
            and self._status != ProcessStatus.TERMINATED
        )

    async def spawn(self) -> None:
        """Start the process in a new pty.

        Raises:
            SpawnError: If the pty or the process cannot be created, or if
                this wrapper was already spawned
        """
        if self._process is not None or self._status == ProcessStatus.TERMINATED:
            raise SpawnError("process already spawned")

        self._log.info("Spawning process",
                       command=shlex.join(self.command),
                       project_path=self.project_path)

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            self._status = ProcessStatus.TERMINATED
            raise SpawnError(str(e), e) from e

        env = {
            **os.environ,
            "TERM": "xterm-256color",
            "CLAUDE_CODE_ENTRY_POINT": "threadwire",
            # No pagers: output must stream straight through
            "PAGER": "",
            "GIT_PAGER": "",
            **self.extra_env,
        }

        try:
            self._set_window_size(slave_fd, self.cols, self.rows)
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.project_path,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            self._status = ProcessStatus.TERMINATED
            self._log.error("Failed to spawn process", error=str(e))
            raise SpawnError(str(e), e) from e
        finally:
            os.close(slave_fd)

        self._master_fd = master_fd
        os.set_blocking(master_fd, False)
        try:
            self._pgid = os.getpgid(self._process.pid)
        except ProcessLookupError:
            self._pgid = self._process.pid

        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._on_readable)
        self._exit_watcher = asyncio.create_task(self._watch_exit())
        self._ready_timer = schedule(self.ready_delay, self._promote_ready, name="ready-promotion")

        self._log.info("Process spawned", pid=self._process.pid, pgid=self._pgid)

    def _promote_ready(self) -> None:
        self._ready_timer = None
        if self._status == ProcessStatus.STARTING and not self._exit_handled:
            self._status = ProcessStatus.READY
            self._log.info("Process ready")
            self.on_ready.emit()

    # Output pipeline

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is gone
            self._remove_reader()
            return

        if not data:
            self._remove_reader()
            return

        self._handle_raw(data)

    def _handle_raw(self, data: bytes) -> None:
        text = self._decoder.decode(data)
        if not text:
            return

        self.on_raw_output.emit(text)
        self._buffer += text

        if detect_prompt(self._buffer):
            self.on_prompt.emit(strip_control_sequences(self._buffer))

        cancel(self._debounce_timer)
        self._debounce_timer = schedule(self.output_debounce, self._flush_output, name="output-debounce")

    def _flush_output(self) -> None:
        self._debounce_timer = None
        pending, self._buffer = self._buffer, ""

        cleaned = strip_control_sequences(pending) if pending.strip() else ""
        if self._status == ProcessStatus.BUSY:
            self._status = ProcessStatus.READY
        if cleaned:
            self.on_output.emit(cleaned)

    def _drain(self) -> None:
        # Pick up whatever the process wrote right before exiting
        while self._master_fd >= 0:
            try:
                data = os.read(self._master_fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            self._handle_raw(data)

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        self._drain()
        self._handle_exit(returncode)

    def _handle_exit(self, exit_code: Optional[int]) -> None:
        if self._exit_handled:
            return
        self._exit_handled = True
        self.exit_code = exit_code
        self._log.info("Process exited", exit_code=exit_code)

        cancel(self._debounce_timer)
        cancel(self._ready_timer)
        self._ready_timer = None
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._buffer += tail
        self._flush_output()

        self._status = ProcessStatus.TERMINATED
        if self._exit_waiter is not None and not self._exit_waiter.done():
            self._exit_waiter.set_result(exit_code)

        self.on_exit.emit(exit_code)
        self._release()

    def _remove_reader(self) -> None:
        if self._loop is not None and self._master_fd >= 0:
            self._loop.remove_reader(self._master_fd)
            if self._writer_registered:
                self._loop.remove_writer(self._master_fd)
                self._writer_registered = False

    def _release(self) -> None:
        self._remove_reader()
        if self._master_fd >= 0:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = -1

    # Input

    def _write(self, data: str) -> None:
        if self._master_fd < 0:
            return
        self._pending_input += data.encode()
        self._flush_input()

    def _flush_input(self) -> None:
        while self._pending_input and self._master_fd >= 0:
            try:
                written = os.write(self._master_fd, self._pending_input)
            except BlockingIOError:
                # pty input queue is full; resume once it drains
                if not self._writer_registered:
                    self._loop.add_writer(self._master_fd, self._flush_input)
                    self._writer_registered = True
                return
            except OSError as e:
                self._log.warning("Write to pty failed", error=str(e))
                self._pending_input.clear()
                break
            del self._pending_input[:written]

        if self._writer_registered and self._master_fd >= 0:
            self._loop.remove_writer(self._master_fd)
        self._writer_registered = False

    def send_input(self, text: str) -> None:
        if not self.is_alive():
            self._log.warning("Attempted to send input to dead process")
            return

        self._log.debug("Sending input", input_length=len(text))
        self._status = ProcessStatus.BUSY
        self._write(text + "\n")

    def send_control(self, key: Union[ControlKey, str]) -> None:
        if not self.is_alive():
            return

        key = ControlKey(key)
        self._log.debug("Sending control key", key=key.value)
        self._write(key.sequence)

    def resize(self, cols: int, rows: int) -> None:
        if self._master_fd < 0:
            return
        self.cols, self.rows = cols, rows
        self._set_window_size(self._master_fd, cols, rows)

    @staticmethod
    def _set_window_size(fd: int, cols: int, rows: int) -> None:
        winsize = struct.pack("HHHH", rows, cols, 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)

    # Termination

    async def terminate(self) -> None:
        """Stop the process: interrupt and ask it to exit, kill at the deadline.

        Idempotent. Concurrent callers share one termination attempt, and
        every caller returns once the process exited or was killed.
        """
        if self._process is None or self._exit_handled:
            return

        if self._termination is None:
            self._termination = asyncio.ensure_future(self._terminate())
        await asyncio.shield(self._termination)

    async def _terminate(self) -> None:
        self._log.info("Terminating process")
        cancel(self._ready_timer)
        self._ready_timer = None
        # Whatever is buffered is flushed by the exit handler
        cancel(self._debounce_timer)

        loop = asyncio.get_running_loop()
        self._exit_waiter = loop.create_future()

        self._write(ControlKey.INTERRUPT.sequence)
        self._write(EXIT_DIRECTIVE)

        def force_kill() -> None:
            if self._exit_waiter.done():
                return
            self._log.warning("Process did not exit in time, killing",
                              timeout=self.kill_timeout)
            self._kill()
            self._status = ProcessStatus.TERMINATED
            self._exit_waiter.set_result(None)

        deadline = schedule(self.kill_timeout, force_kill, name="force-kill")
        try:
            await self._exit_waiter
        finally:
            deadline.cancel()

    def _kill(self) -> None:
        try:
            os.killpg(self._pgid, signal.SIGKILL)
        except ProcessLookupError:
            self._log.debug("Process group already gone", pgid=self._pgid)
        except OSError as e:
            self._log.warning("killpg failed, killing process", error=str(e))
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
