from __future__ import annotations

"""Pipe transport for one external worker process.

``ProcessTransport`` is the only place that touches :mod:`subprocess`.  It
exposes the four primitives the correlation layer needs –
``send(bytes)``, ``on_message(cb)``, ``on_exit(cb)`` and ``kill()`` – and owns
the process together with its three pipes exclusively.

Threads
-------
* **stdout reader** – exactly one per transport; splits the stream on ``\\n``
  and hands each raw line to the message callbacks *in arrival order*.  When
  the stream reaches EOF it waits for the process and fires the exit
  callbacks.  Exit detection is therefore edge-triggered, never polled.
* **stderr drain** – re-logs every line through the injected logger so that
  worker diagnostics end up in the host's log files.
"""

import logging
import os
import subprocess
import threading
from typing import Callable, List, Optional, Sequence

from .errors import SpawnError

__all__ = ["ProcessTransport"]

MessageCallback = Callable[[bytes], None]
ExitCallback = Callable[[Optional[int]], None]


class ProcessTransport:  # pylint: disable=too-many-instance-attributes
    """Newline framed stdio transport around :class:`subprocess.Popen`."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        name: str = "worker",
        env: Optional[dict] = None,
        cwd: Optional[str] = None,
        startup_grace: float = 0.2,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not command:
            raise SpawnError("Empty worker command")
        self.command: List[str] = [str(part) for part in command]
        self.name = name
        self._env = env
        self._cwd = cwd
        self._startup_grace = startup_grace
        self._log = logger or logging.getLogger(f"ipc.{name}")

        self._proc: Optional[subprocess.Popen] = None
        self._write_lock = threading.Lock()
        self._message_callbacks: List[MessageCallback] = []
        self._exit_callbacks: List[ExitCallback] = []
        self._stdout_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._exited = threading.Event()
        self.returncode: Optional[int] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Spawn the process or raise :class:`SpawnError`.

        A process that terminates within *startup_grace* seconds is treated as
        a failed spawn; its stderr tail is included in the error message.
        """

        try:
            self._proc = subprocess.Popen(  # noqa: S603 – command is caller controlled
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._env,
                cwd=self._cwd,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise SpawnError(f"Cannot launch {self.name} ({self.command[0]}): {exc}") from exc
        except OSError as exc:
            raise SpawnError(f"Cannot launch {self.name}: {exc}") from exc

        if self._startup_grace > 0:
            try:
                self._proc.wait(timeout=self._startup_grace)
            except subprocess.TimeoutExpired:
                pass  # still alive – the expected case
            else:
                stderr_tail = self._read_stderr_tail()
                returncode = self._proc.returncode
                self._close_pipes()
                self._exited.set()
                self.returncode = returncode
                raise SpawnError(
                    f"{self.name} exited immediately (returncode={returncode})"
                    + (f": {stderr_tail}" if stderr_tail else "")
                )

        self._log.info("%s process started (pid=%d)", self.name, self._proc.pid)
        self._stdout_thread = threading.Thread(
            target=self._read_loop, name=f"{self.name}-reader", daemon=True
        )
        self._stderr_thread = threading.Thread(
            target=self._stderr_loop, name=f"{self.name}-stderr", daemon=True
        )
        self._stdout_thread.start()
        self._stderr_thread.start()

    def send(self, data: bytes) -> None:
        """Write *data* to the worker's stdin (single writer).

        Raises :class:`BrokenPipeError` when the process is gone.
        """

        proc = self._proc
        if proc is None or proc.stdin is None or proc.poll() is not None:
            raise BrokenPipeError(f"{self.name} is not running")
        with self._write_lock:
            try:
                proc.stdin.write(data)
                proc.stdin.flush()
            except (ValueError, OSError) as exc:  # ValueError: closed file
                raise BrokenPipeError(f"Write to {self.name} failed: {exc}") from exc

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    def close_stdin(self) -> None:
        """Signal EOF to the worker – a polite request to exit."""
        proc = self._proc
        if proc is None or proc.stdin is None:
            return
        with self._write_lock:
            try:
                proc.stdin.close()
            except OSError:
                pass

    def terminate(self, grace: float = 2.0) -> Optional[int]:
        """SIGTERM, wait up to *grace* seconds, then SIGKILL.  Returns exit code."""

        proc = self._proc
        if proc is None:
            return self.returncode
        try:
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=grace)
                except subprocess.TimeoutExpired:
                    self._log.warning("%s ignored SIGTERM – killing", self.name)
                    proc.kill()
                    proc.wait()
        finally:
            self._finalise()
        return proc.returncode

    def kill(self) -> None:
        """Forcefully stop the process and release its pipes."""
        proc = self._proc
        if proc is None:
            return
        try:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
        finally:
            self._finalise()

    def wait_exit(self, timeout: float | None = None) -> bool:
        """Block until the exit callbacks have fired.  Returns *False* on timeout."""
        return self._exited.wait(timeout)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def alive(self) -> bool:
        return self._proc is not None and not self._exited.is_set() and self._proc.poll() is None

    # ------------------------------------------------------------------
    # Reader threads
    # ------------------------------------------------------------------
    def _read_loop(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        try:
            for raw in iter(proc.stdout.readline, b""):
                line = raw.strip()
                if not line:
                    continue
                for callback in list(self._message_callbacks):
                    try:
                        callback(line)
                    except Exception:  # pylint: disable=broad-except
                        # A faulty consumer must not kill the single reader.
                        self._log.exception("%s message callback failed", self.name)
        except (OSError, ValueError) as exc:
            self._log.debug("%s stdout closed: %s", self.name, exc)
        finally:
            returncode = proc.wait()
            self.returncode = returncode
            self._log.info("%s process exited (returncode=%s)", self.name, returncode)
            for callback in list(self._exit_callbacks):
                try:
                    callback(returncode)
                except Exception:  # pylint: disable=broad-except
                    self._log.exception("%s exit callback failed", self.name)
            self._exited.set()

    def _stderr_loop(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stderr is not None
        try:
            for raw in iter(proc.stderr.readline, b""):
                text = raw.decode("utf-8", errors="replace").rstrip()
                if text:
                    self._log.debug("[%s] %s", self.name, text)
        except (OSError, ValueError):
            pass

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _read_stderr_tail(self, limit: int = 2000) -> str:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return ""
        try:
            data = proc.stderr.read() or b""
        except (OSError, ValueError):
            return ""
        return data.decode("utf-8", errors="replace").strip()[-limit:]

    def _finalise(self) -> None:
        """Join reader threads and close pipes – safe to call repeatedly."""
        current = threading.current_thread()
        for thread in (self._stdout_thread, self._stderr_thread):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=5)
        self._close_pipes()

    def _close_pipes(self) -> None:
        proc = self._proc
        if proc is None:
            return
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError:
                pass

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ProcessTransport name={self.name} pid={self.pid} alive={self.alive}>"


def default_env(**overrides: str) -> dict:
    """Return a copy of ``os.environ`` with *overrides* applied."""
    env = dict(os.environ)
    env.update(overrides)
    return env
