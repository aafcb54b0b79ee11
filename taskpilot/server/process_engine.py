"""
SOLE RESPONSIBILITY: Spawn, track and terminate OS child processes.
Owns the process table; every state transition happens here and is observable through poll().
"""

import dataclasses
import logging
import os
import shutil
import subprocess
import sys
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import psutil

from .errors import AlreadyTerminalError, LaunchError, ProcessNotFoundError
from .models import TERMINAL_PROCESS_STATUSES, ProcessInfo, ProcessOptions, ProcessStatus, utc_now

logger = logging.getLogger(__name__)

# Seconds to wait for output readers to drain after the process exits
READER_JOIN_TIMEOUT = 2.0
# Seconds to wait for a terminated process tree before escalating to kill
TERMINATE_GRACE_PERIOD = 5.0


class ProcessEngine:
    """
    Process table keyed by process id, guarded by a lock.
    One instance is created by the application and injected where needed.
    """

    def __init__(self):
        self._processes: Dict[str, ProcessInfo] = {}
        self._handles: Dict[str, subprocess.Popen] = {}
        self._watchers: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    @staticmethod
    def resolve_executable(command: str, working_dir: Optional[str] = None) -> Optional[str]:
        """Resolve a bare name through PATH, or a path relative to working_dir."""
        if not command:
            return None
        if os.path.dirname(command):
            path = Path(command)
            if not path.is_absolute() and working_dir:
                path = Path(working_dir) / path
            return str(path) if path.is_file() else None
        return shutil.which(command)

    def start(
        self,
        command: str,
        args: Optional[Sequence[str]] = None,
        options: Optional[ProcessOptions] = None,
    ) -> ProcessInfo:
        """
        Launch a process and return its snapshot in RUNNING state.
        Raises LaunchError if the executable cannot be resolved or spawned.
        """
        options = options or ProcessOptions()
        args = list(args or [])

        executable = self.resolve_executable(command, options.working_dir)
        if executable is None:
            logger.error(f"Command not found: {command}")
            raise LaunchError(f"Command not found: {command}")

        process_id = uuid.uuid4().hex
        info = ProcessInfo(
            process_id=process_id,
            command=command,
            args=args,
            working_dir=options.working_dir,
        )
        with self._lock:
            self._processes[process_id] = info

        env = os.environ.copy()
        if options.env:
            env.update(options.env)

        popen_kwargs = {
            "cwd": options.working_dir,
            "env": env,
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.PIPE,
            "text": True,
            "encoding": "utf-8",
            "errors": "replace",
        }
        # windowless / detached launch flags differ per platform
        if sys.platform == "win32":
            flags = 0
            if options.hide_window:
                flags |= subprocess.CREATE_NO_WINDOW
            if options.detached:
                flags |= subprocess.CREATE_NEW_PROCESS_GROUP
            popen_kwargs["creationflags"] = flags
        elif options.detached:
            popen_kwargs["start_new_session"] = True

        description = " ".join([command, *args])
        logger.debug(f"Starting process {process_id}: {description} (timeout={options.timeout})")

        try:
            proc = subprocess.Popen([executable, *args], **popen_kwargs)
        except (OSError, ValueError) as e:
            with self._lock:
                info.status = ProcessStatus.FAILED
                info.stderr = str(e)
                info.end_time = utc_now()
            logger.error(f"Failed to launch {description}: {e}")
            raise LaunchError(f"Failed to launch {command}: {e}", cause=e) from e

        with self._lock:
            info.pid = proc.pid
            info.status = ProcessStatus.RUNNING
            self._handles[process_id] = proc

        readers = [
            threading.Thread(target=self._drain, args=(process_id, proc.stdout, "stdout"), daemon=True),
            threading.Thread(target=self._drain, args=(process_id, proc.stderr, "stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()

        watcher = threading.Thread(
            target=self._watch,
            args=(process_id, proc, options.timeout, readers),
            daemon=True,
        )
        with self._lock:
            self._watchers[process_id] = watcher
        watcher.start()

        logger.info(f"Started process {process_id} (pid={proc.pid}): {description}")
        return self.poll(process_id)

    def _drain(self, process_id: str, stream, stream_name: str) -> None:
        """Accumulate a pipe into the process record as it arrives."""
        try:
            for chunk in iter(stream.readline, ""):
                with self._lock:
                    info = self._processes.get(process_id)
                    if info is None or info.is_terminal:
                        continue
                    setattr(info, stream_name, getattr(info, stream_name) + chunk)
        except (OSError, ValueError):
            pass  # pipe closed underneath us during kill
        finally:
            stream.close()

    def _watch(
        self,
        process_id: str,
        proc: subprocess.Popen,
        timeout: Optional[float],
        readers: List[threading.Thread],
    ) -> None:
        """Wait for exit, enforce the timeout, and record the terminal state."""
        timed_out = False
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(f"Process {process_id} timed out after {timeout}s, killing")
            self._kill_tree(proc.pid, force=True)
            proc.wait()

        for reader in readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)

        with self._lock:
            info = self._processes.get(process_id)
            if info is None or info.is_terminal:
                return
            info.exit_code = proc.returncode
            info.end_time = utc_now()
            if info.status == ProcessStatus.STOPPING:
                info.status = ProcessStatus.STOPPED
            elif timed_out:
                info.status = ProcessStatus.TIMEOUT
            else:
                info.status = ProcessStatus.COMPLETED
            status = info.status

        logger.debug(f"Process {process_id} finished: {status.value} (rc={proc.returncode})")

    @staticmethod
    def _kill_tree(pid: int, force: bool) -> None:
        """Terminate (or kill) a process and all of its descendants."""
        try:
            parent = psutil.Process(pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                if force:
                    proc.kill()
                else:
                    proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug(f"Could not signal process {proc.pid}: {e}")

        _, alive = psutil.wait_procs(procs, timeout=TERMINATE_GRACE_PERIOD)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    @staticmethod
    def is_terminal(status: ProcessStatus) -> bool:
        return status in TERMINAL_PROCESS_STATUSES

    def _get(self, process_id: str) -> ProcessInfo:
        info = self._processes.get(process_id)
        if info is None:
            raise ProcessNotFoundError(f"Process {process_id} not found")
        return info

    def poll(self, process_id: str) -> ProcessInfo:
        """Snapshot of the current state. No side effects."""
        with self._lock:
            info = self._get(process_id)
            return dataclasses.replace(info, args=list(info.args))

    def get_output(self, process_id: str) -> Tuple[str, str]:
        """stdout and stderr accumulated so far; works while the process is still running."""
        with self._lock:
            info = self._get(process_id)
            return info.stdout, info.stderr

    def stop(self, process_id: str, force: bool = False) -> ProcessInfo:
        """
        Request termination: RUNNING -> STOPPING -> STOPPED.
        Raises ProcessNotFoundError for unknown ids, AlreadyTerminalError for finished processes.
        """
        with self._lock:
            info = self._get(process_id)
            if info.is_terminal:
                raise AlreadyTerminalError(f"Process {process_id} already {info.status.value}")
            info.status = ProcessStatus.STOPPING
            proc = self._handles.get(process_id)
            watcher = self._watchers.get(process_id)

        logger.info(f"Stopping process {process_id} (force={force})")
        if proc is not None:
            self._kill_tree(proc.pid, force=force)
        if watcher is not None:
            watcher.join(timeout=TERMINATE_GRACE_PERIOD + READER_JOIN_TIMEOUT)

        with self._lock:
            if not info.is_terminal:
                info.status = ProcessStatus.STOPPED
                info.end_time = utc_now()
                info.exit_code = proc.poll() if proc is not None else None
            return dataclasses.replace(info, args=list(info.args))

    def list_processes(self) -> List[ProcessInfo]:
        with self._lock:
            return [dataclasses.replace(info, args=list(info.args)) for info in self._processes.values()]

    def forget(self, process_id: str) -> bool:
        """Drop a terminal process from the table. Live processes are kept."""
        with self._lock:
            info = self._processes.get(process_id)
            if info is None or not info.is_terminal:
                return False
            del self._processes[process_id]
            self._handles.pop(process_id, None)
            self._watchers.pop(process_id, None)
            return True

    def shutdown(self) -> int:
        """Force-stop every live process. Returns how many were stopped."""
        stopped = 0
        for info in self.list_processes():
            if info.is_terminal:
                continue
            try:
                self.stop(info.process_id, force=True)
                stopped += 1
            except (ProcessNotFoundError, AlreadyTerminalError):
                continue
        if stopped:
            logger.info(f"Stopped {stopped} live processes on shutdown")
        return stopped
