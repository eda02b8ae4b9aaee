"""
Process manager for ffmpeg relay runs.

Launches one ffmpeg process per run, captures its stderr to a log file and
hands the raw output to a callback, reports the exit code when the process
ends, and terminates whole process trees with a bounded grace period.
"""

import codecs
import logging
import os
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import psutil

from .config import Config
from .errors import SubprocessSpawnError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


@dataclass
class ProcessHandle:
    """A running ffmpeg process and the thread watching it."""

    name: str
    argv: list[str]
    process: subprocess.Popen
    started_at: datetime = field(default_factory=datetime.now)
    watcher: Optional[threading.Thread] = None
    exited: threading.Event = field(default_factory=threading.Event)

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_running(self) -> bool:
        return self.process.poll() is None

    def wait_closed(self, timeout: float = None) -> bool:
        """Wait until the exit callback has run."""
        return self.exited.wait(timeout)


class ProcessManager:
    """Spawns and terminates ffmpeg processes."""

    def __init__(self, config: Config):
        self.config = config

    def spawn(
        self,
        name: str,
        argv: list[str],
        on_output: Callable[[str], None],
        on_exit: Callable[[Optional[int]], None],
    ) -> ProcessHandle:
        """Start a process. Raises SubprocessSpawnError if it cannot be launched."""
        log_dir = Path(self.config.logs_dir) / name
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = open(log_dir / "ffmpeg.log", "a")
        except OSError as e:
            raise SubprocessSpawnError(f"Cannot open log file for {name}: {e}") from e

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=os.environ.copy(),
                start_new_session=True,  # Create new process group
            )
        except FileNotFoundError as e:
            log_file.close()
            raise SubprocessSpawnError(f"ffmpeg binary not found: {argv[0]}") from e
        except PermissionError as e:
            log_file.close()
            raise SubprocessSpawnError(f"Permission denied executing {argv[0]}") from e
        except (OSError, ValueError) as e:
            log_file.close()
            raise SubprocessSpawnError(f"Failed to launch {argv[0]}: {e}") from e

        handle = ProcessHandle(name=name, argv=list(argv), process=process)
        handle.watcher = threading.Thread(
            target=self._watch,
            args=(handle, on_output, on_exit, log_file),
            name=f"ffmpeg-{name}",
            daemon=True,
        )
        handle.watcher.start()

        logger.info(f"Started ffmpeg for {name} with PID {process.pid}")
        return handle

    def terminate(self, handle: ProcessHandle, timeout: float = None, wait: bool = False) -> None:
        """Send SIGTERM to the process tree, SIGKILL whatever is left after timeout.

        With wait=False the grace period runs in a background thread.
        """
        if timeout is None:
            timeout = self.config.stop_timeout

        if wait:
            self._terminate_tree(handle, timeout)
            return

        threading.Thread(
            target=self._terminate_tree,
            args=(handle, timeout),
            name=f"reaper-{handle.name}",
            daemon=True,
        ).start()

    def stats(self, handle: ProcessHandle) -> dict:
        """CPU and memory usage of the process tree."""
        result = {"pid": handle.pid, "cpu_percent": 0.0, "memory_mb": 0.0, "child_processes": 0}
        try:
            proc = psutil.Process(handle.pid)
            cpu_percent = proc.cpu_percent(interval=0.1)
            memory_mb = proc.memory_info().rss / 1024 / 1024

            child_count = 0
            try:
                children = proc.children(recursive=True)
                child_count = len(children)
                for child in children:
                    cpu_percent += child.cpu_percent(interval=0.1)
                    memory_mb += child.memory_info().rss / 1024 / 1024
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

            result.update(
                {
                    "cpu_percent": round(cpu_percent, 1),
                    "memory_mb": round(memory_mb, 1),
                    "child_processes": child_count,
                    "uptime_seconds": (datetime.now() - handle.started_at).total_seconds(),
                }
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        return result

    def _terminate_tree(self, handle: ProcessHandle, timeout: float):
        try:
            parent = psutil.Process(handle.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=timeout)
        if alive:
            logger.warning(f"ffmpeg for {handle.name} did not stop gracefully, forcing kill")
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            psutil.wait_procs(alive, timeout=5)

        try:
            handle.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error(f"ffmpeg for {handle.name} (PID {handle.pid}) could not be reaped")

    def _watch(
        self,
        handle: ProcessHandle,
        on_output: Callable[[str], None],
        on_exit: Callable[[Optional[int]], None],
        log_file,
    ):
        """Read stderr until EOF, then report the exit code."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stream = handle.process.stderr
        try:
            while True:
                chunk = os.read(stream.fileno(), READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if not text:
                    continue

                try:
                    log_file.write(text)
                    log_file.flush()
                except OSError as e:
                    logger.error(f"Error writing ffmpeg log for {handle.name}: {e}")

                try:
                    on_output(text)
                except Exception as e:
                    logger.error(f"Error processing output for {handle.name}: {e}")

        except OSError as e:
            logger.error(f"Error in output capture for {handle.name}: {e}")
        finally:
            try:
                log_file.close()
            except OSError:
                pass
            try:
                stream.close()
            except OSError:
                pass

        returncode = handle.process.wait()
        logger.info(f"ffmpeg for {handle.name} (PID {handle.pid}) exited with code {returncode}")
        try:
            on_exit(returncode)
        except Exception as e:
            logger.error(f"Error handling exit of {handle.name}: {e}")
        finally:
            handle.exited.set()
