"""Guest-side supervisor daemon (``guestexecd``).

Runs inside the booted guest. It reads ``/etc/guestexecd`` (program name on
the first line, one argument per following line), runs the program on a
pseudo-terminal, relays the terminal output to its own stdout and to the
emulator's debug console, and reports the verdict through the emulator's
exit device:

    success  -> 0x2000 to port 0x604, then 51 // 2 to port 0x501
    failure  -> 0x2000 to port 0x604, then 53 // 2 to port 0x501

With ``isa-debug-exit`` the emulator then exits with status 51 or 53.

Usage:
    python -m guestexec.supervisor [--config PATH] [--port-device PATH]
"""

from __future__ import annotations

import argparse
import enum
import errno
import fcntl
import logging
import os
import pty
import selectors
import signal
import struct
import subprocess
import sys
import termios
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import BinaryIO, Protocol

from .errors import ConfigError, UnexpectedEvent

logger = logging.getLogger(__name__)

CONFIG_PATH = Path("/etc/guestexecd")
PORT_DEVICE = "/dev/port"

DEFAULT_COLUMNS = 80
DEFAULT_LINES = 30
TERM = "xterm-256color"

SHUTDOWN_PORT = 0x604
SHUTDOWN_VALUE = 0x2000
EXIT_PORT = 0x501
DEBUGCON_PORT = 0xE9
SUCCESS_CODE = 51 // 2
FAILURE_CODE = 53 // 2

_READ_SIZE = 4096
_HEARTBEAT_S = 1.0
_REAP_GRACE_S = 0.2


class State(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


class GuestSignalChannel(Protocol):
    def signal_success(self) -> None: ...

    def signal_failure(self) -> None: ...


class ConsoleMirror(Protocol):
    def write(self, data: bytes) -> None: ...


class Process(Protocol):
    def poll(self) -> int | None: ...

    def kill(self) -> None: ...

    def wait(self, timeout: float | None = None) -> int: ...


class PortIO:
    """Writes to x86 I/O ports through ``/dev/port``."""

    def __init__(self, fd: int):
        self._fd = fd

    @classmethod
    def open(cls, device: str = PORT_DEVICE) -> "PortIO":
        # Opening the device for writing needs CAP_SYS_RAWIO.
        return cls(os.open(device, os.O_WRONLY | os.O_CLOEXEC))

    def __enter__(self) -> "PortIO":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
        return None

    def outb(self, port: int, value: int) -> None:
        os.pwrite(self._fd, bytes([value & 0xFF]), port)

    def outw(self, port: int, value: int) -> None:
        os.pwrite(self._fd, struct.pack("<H", value & 0xFFFF), port)

    def close(self) -> None:
        if self._fd >= 0:
            os.close(self._fd)
            self._fd = -1


class PortSignalChannel:
    def __init__(self, ports: PortIO):
        self.ports = ports

    def signal_success(self) -> None:
        self.ports.outw(SHUTDOWN_PORT, SHUTDOWN_VALUE)
        self.ports.outb(EXIT_PORT, SUCCESS_CODE)

    def signal_failure(self) -> None:
        self.ports.outw(SHUTDOWN_PORT, SHUTDOWN_VALUE)
        self.ports.outb(EXIT_PORT, FAILURE_CODE)


class DebugConsole:
    """Mirrors terminal output to the Bochs-compatible debug console port."""

    def __init__(self, ports: PortIO):
        self.ports = ports

    def write(self, data: bytes) -> None:
        for byte in data:
            self.ports.outb(DEBUGCON_PORT, byte)


class Terminal:
    """Master side of a pseudo-terminal; reads never block."""

    def __init__(self, master: int, path: str):
        self.master = master
        self.path = path

    @classmethod
    def open(cls, columns: int = DEFAULT_COLUMNS, lines: int = DEFAULT_LINES) -> "Terminal":
        master, slave = pty.openpty()
        try:
            fcntl.ioctl(master, termios.TIOCSWINSZ, struct.pack("HHHH", lines, columns, 0, 0))
            path = os.ttyname(slave)
        finally:
            os.close(slave)
        os.set_blocking(master, False)
        return cls(master, path)

    def fileno(self) -> int:
        return self.master

    def read(self, size: int = _READ_SIZE) -> bytes | None:
        """Return available bytes, ``None`` if none are ready, ``b""`` once closed."""
        try:
            return os.read(self.master, size)
        except BlockingIOError:
            return None
        except OSError as exc:
            # Linux reports a hung-up slave side as EIO rather than EOF.
            if exc.errno == errno.EIO:
                return b""
            raise

    def open_slave(self) -> tuple[int, int, int]:
        stdin = os.open(self.path, os.O_RDONLY | os.O_NOCTTY)
        stdout = os.open(self.path, os.O_WRONLY | os.O_NOCTTY)
        stderr = os.open(self.path, os.O_WRONLY | os.O_NOCTTY)
        return stdin, stdout, stderr

    def close(self) -> None:
        if self.master >= 0:
            os.close(self.master)
            self.master = -1


def _on_alarm(signum, frame) -> None:
    return None


class HeartbeatTimer:
    """A descriptor that becomes readable once per interval.

    ``SIGALRM`` from a one-shot interval timer is delivered to a signal wakeup
    pipe; :meth:`acknowledge` consumes the expiry and schedules the next one.
    Must be created on the main thread.
    """

    def __init__(self, interval_s: float = _HEARTBEAT_S):
        self.interval_s = interval_s
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)
        self._previous_handler = signal.signal(signal.SIGALRM, _on_alarm)
        self._previous_wakeup = signal.set_wakeup_fd(self._write_fd, warn_on_full_buffer=False)
        signal.setitimer(signal.ITIMER_REAL, self.interval_s)

    def fileno(self) -> int:
        return self._read_fd

    def acknowledge(self) -> bytes:
        try:
            record = os.read(self._read_fd, 64)
        except BlockingIOError:
            record = b""
        signal.setitimer(signal.ITIMER_REAL, self.interval_s)
        return record

    def close(self) -> None:
        if self._read_fd < 0:
            return
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.set_wakeup_fd(self._previous_wakeup)
        signal.signal(signal.SIGALRM, self._previous_handler)
        os.close(self._read_fd)
        os.close(self._write_fd)
        self._read_fd = self._write_fd = -1


class EventQueue:
    """Single-threaded readiness notification over registered descriptors."""

    def __init__(self):
        self._selector = selectors.DefaultSelector()

    def register(self, fd: int) -> None:
        self._selector.register(fd, selectors.EVENT_READ)

    def wait(self) -> list[int]:
        return [key.fd for key, _ in self._selector.select()]

    def close(self) -> None:
        self._selector.close()


class Supervisor:
    """Relays terminal output until the supervised process is finished."""

    def __init__(
        self,
        terminal: Terminal,
        timer: HeartbeatTimer,
        events: EventQueue,
        process: Process,
        *,
        output: BinaryIO | None = None,
        console: ConsoleMirror | None = None,
    ):
        self.terminal = terminal
        self.timer = timer
        self.events = events
        self.process = process
        self.output = sys.stdout.buffer if output is None else output
        self.console = console
        self.state = State.STARTING
        self.killed = False

    def handle_event(self, event_id: int) -> bool:
        """Handle one ready descriptor; return False once the terminal has closed."""
        if event_id == self.terminal.fileno():
            return self._relay_terminal()
        if event_id == self.timer.fileno():
            self.timer.acknowledge()
            return True
        raise UnexpectedEvent(event_id)

    def _relay_terminal(self) -> bool:
        while True:
            data = self.terminal.read(_READ_SIZE)
            if data is None:
                return True
            if not data:
                return False
            self.output.write(data)
            self.output.flush()
            if self.console is not None:
                self.console.write(data)

    def supervise(self) -> int:
        """Run the event loop and return the process exit status."""
        self.state = State.RUNNING
        if self.handle_event(self.terminal.fileno()) and self.handle_event(self.timer.fileno()):
            while self.state is State.RUNNING:
                status = self.process.poll()
                if status is not None:
                    self._relay_terminal()
                    self.state = State.TERMINATED
                    return status
                for event_id in self.events.wait():
                    if not self.handle_event(event_id):
                        self.state = State.DRAINING
                        break

        self.state = State.DRAINING
        try:
            # EIO on the master can arrive before an exiting child is reapable.
            status = self.process.wait(timeout=_REAP_GRACE_S)
        except subprocess.TimeoutExpired:
            logger.debug("terminal closed before the process exited; killing it")
            self.process.kill()
            self.killed = True
            status = self.process.wait()
        self.state = State.TERMINATED
        return status


def read_config(path: Path = CONFIG_PATH) -> list[str]:
    """Read the command line, one argument per ``\\n``-terminated line."""
    try:
        text = path.read_bytes().decode("utf-8")
    except FileNotFoundError:
        raise ConfigError(f"{path} does not exist") from None
    except UnicodeDecodeError:
        raise ConfigError(f"{path} is not valid UTF-8") from None
    argv = text.split("\n")
    if argv[-1] == "":
        argv.pop()
    if not argv or not argv[0]:
        raise ConfigError(f"{path} does not specify command")
    return argv


def spawn(
    argv: list[str],
    terminal: Terminal,
    *,
    columns: int = DEFAULT_COLUMNS,
    lines: int = DEFAULT_LINES,
) -> subprocess.Popen:
    env = dict(os.environ)
    env.update(
        {
            "COLUMNS": str(columns),
            "LINES": str(lines),
            "TERM": TERM,
            "TTY": terminal.path,
        }
    )
    stdin, stdout, stderr = terminal.open_slave()
    try:
        return subprocess.Popen(
            argv,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            env=env,
            start_new_session=True,
        )
    finally:
        for fd in (stdin, stdout, stderr):
            os.close(fd)


def run(
    config_path: Path = CONFIG_PATH,
    *,
    output: BinaryIO | None = None,
    console: ConsoleMirror | None = None,
    columns: int = DEFAULT_COLUMNS,
    lines: int = DEFAULT_LINES,
) -> int:
    """Run the configured program to completion and return its exit status."""
    argv = read_config(config_path)
    terminal = Terminal.open(columns, lines)
    try:
        timer = HeartbeatTimer()
        try:
            events = EventQueue()
            try:
                events.register(terminal.fileno())
                events.register(timer.fileno())
                process = spawn(argv, terminal, columns=columns, lines=lines)
                supervisor = Supervisor(
                    terminal, timer, events, process, output=output, console=console
                )
                return supervisor.supervise()
            finally:
                events.close()
        finally:
            timer.close()
    finally:
        terminal.close()


def describe_status(status: int) -> str:
    if status < 0:
        return f"killed by signal {-status}"
    return f"exit status: {status}"


def execute(
    channel: GuestSignalChannel,
    work: Callable[[], int],
    *,
    err: BinaryIO | None = None,
) -> int:
    """Run ``work`` and report its verdict on ``channel``; return 0 or 1."""
    try:
        status = work()
    except Exception as exc:
        _report_error(str(exc), err)
        channel.signal_failure()
        return 1

    if status == 0:
        channel.signal_success()
        return 0
    _report_error(describe_status(status), err)
    channel.signal_failure()
    return 1


def _report_error(message: str, err: BinaryIO | None) -> None:
    stream = sys.stderr.buffer if err is None else err
    stream.write(f"guestexecd: {message}\n".encode("utf-8", errors="replace"))
    stream.flush()


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the configured program and report its verdict.")
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        help=f"Guest configuration file (default: {CONFIG_PATH}).",
    )
    parser.add_argument(
        "--port-device",
        default=PORT_DEVICE,
        help=f"Device used for I/O port writes (default: {PORT_DEVICE}).",
    )
    return parser.parse_args(None if argv is None else list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="guestexecd: %(message)s")

    try:
        ports = PortIO.open(args.port_device)
    except OSError as exc:
        print(f"guestexecd: cannot acquire I/O port access: {exc}", file=sys.stderr)
        return 1

    with ports:
        return execute(
            PortSignalChannel(ports),
            lambda: run(args.config, console=DebugConsole(ports)),
        )


if __name__ == "__main__":
    raise SystemExit(main())
