"""
Streaming process pipelines.

A pipeline chains external processes through OS pipes
(source file -> stage -> stage -> sink file). Pipes provide the
backpressure between stages; the parent only polls for exit, reports
progress, and tears every stage down on failure or cancellation.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from partvault.core.job import JobCancelledException
from partvault.core.logging import get_logger

logger = get_logger(__name__)

STDERR_TAIL = 2000


@dataclass(frozen=True)
class Stage:
    """One process in a pipeline."""

    name: str
    command: tuple[str, ...]

    @classmethod
    def of(cls, name: str, command: list[str]) -> Stage:
        return cls(name=name, command=tuple(command))


@dataclass
class PipelineResult:
    """Exit status of every stage and the bytes that flowed through."""

    stages: list[Stage]
    returncodes: list[int | None]
    stderr: list[str]
    bytes_in: int = 0
    bytes_out: int = 0
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return all(rc == 0 for rc in self.returncodes)

    @property
    def failed_stages(self) -> list[str]:
        return [s.name for s, rc in zip(self.stages, self.returncodes) if rc != 0]

    @property
    def first_failure(self) -> str | None:
        """The stage that failed on its own rather than from being torn down."""
        for stage, rc in zip(self.stages, self.returncodes):
            if rc is not None and rc > 0:
                return stage.name
        failed = self.failed_stages
        return failed[0] if failed else None

    @property
    def diagnostic(self) -> str:
        parts = []
        for stage, rc, err in zip(self.stages, self.returncodes, self.stderr):
            if rc != 0:
                text = err.strip().splitlines()[-1] if err.strip() else "no output"
                parts.append(f"{stage.name} exited {rc}: {text}")
        return "; ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": [s.name for s in self.stages],
            "returncodes": self.returncodes,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class Pipeline:
    """A forward-only byte stream through one or more processes."""

    stages: list[Stage]
    source: Path | None = None
    sink: Path | None = None
    cancel_event: threading.Event | None = None
    poll_interval: float = 0.1
    progress_interval: float = 0.5
    on_progress: Callable[[int, int], None] | None = None
    on_stage_exit: Callable[[Stage, int], None] | None = None
    _procs: list[subprocess.Popen[bytes]] = field(default_factory=list, init=False, repr=False)

    def run(self) -> PipelineResult:
        """
        Run all stages to completion.

        Returns a PipelineResult even when a stage fails; raises
        JobCancelledException after tearing everything down if the
        cancel event is set while stages are running.
        """
        if not self.stages:
            raise ValueError("Pipeline needs at least one stage")

        start = time.monotonic()
        stderr_files: list[IO[bytes]] = []
        returncodes: list[int | None] = [None] * len(self.stages)
        source_handle = open(self.source, "rb") if self.source else None
        sink_handle = open(self.sink, "wb") if self.sink else None
        self._procs = []
        bytes_in = bytes_out = 0

        try:
            upstream: Any = source_handle if source_handle else subprocess.DEVNULL
            for position, stage in enumerate(self.stages):
                last = position == len(self.stages) - 1
                stderr_file = tempfile.TemporaryFile()
                stderr_files.append(stderr_file)
                logger.debug("Starting pipeline stage", stage=stage.name, command=list(stage.command))
                try:
                    proc = subprocess.Popen(
                        list(stage.command),
                        stdin=upstream,
                        stdout=(sink_handle or subprocess.DEVNULL) if last else subprocess.PIPE,
                        stderr=stderr_file,
                    )
                except OSError as e:
                    stderr_file.write(str(e).encode())
                    returncodes[position] = 127
                    self._terminate()
                    for index, proc_started in enumerate(self._procs):
                        returncodes[index] = proc_started.returncode
                    break

                # Drop the parent's copy so the upstream stage sees SIGPIPE if we stop reading
                if self._procs and self._procs[-1].stdout is not None:
                    self._procs[-1].stdout.close()
                self._procs.append(proc)
                upstream = proc.stdout
            else:
                self._wait(returncodes, source_handle, sink_handle)

            bytes_in = self._position(source_handle)
            bytes_out = self._size(sink_handle)
        finally:
            self._terminate()
            if source_handle:
                source_handle.close()
            if sink_handle:
                sink_handle.close()

        stderr_text = []
        for stderr_file in stderr_files:
            stderr_file.seek(0)
            stderr_text.append(stderr_file.read().decode("utf-8", errors="replace")[-STDERR_TAIL:])
            stderr_file.close()
        stderr_text += [""] * (len(self.stages) - len(stderr_text))

        result = PipelineResult(
            stages=list(self.stages),
            returncodes=returncodes,
            stderr=stderr_text,
            bytes_in=bytes_in,
            bytes_out=bytes_out,
            duration_seconds=time.monotonic() - start,
        )
        log = logger.debug if result.success else logger.warning
        log("Pipeline finished", **result.to_dict())
        return result

    def _wait(
        self,
        returncodes: list[int | None],
        source_handle: IO[bytes] | None,
        sink_handle: IO[bytes] | None,
    ) -> None:
        pending = set(range(len(self._procs)))
        last_progress = 0.0

        while pending:
            if self.cancel_event is not None and self.cancel_event.is_set():
                self._terminate()
                raise JobCancelledException("Pipeline cancelled")

            for position in sorted(pending):
                rc = self._procs[position].poll()
                if rc is None:
                    continue
                pending.discard(position)
                returncodes[position] = rc
                if self.on_stage_exit is not None:
                    self.on_stage_exit(self.stages[position], rc)
                if rc != 0:
                    # A broken stream cannot be resumed; stop the remaining stages
                    self._terminate()
                    for other in sorted(pending):
                        returncodes[other] = self._procs[other].returncode
                    pending.clear()
                    break

            now = time.monotonic()
            if self.on_progress is not None and now - last_progress >= self.progress_interval:
                last_progress = now
                self.on_progress(self._position(source_handle), self._size(sink_handle))

            if pending:
                if self.cancel_event is not None:
                    self.cancel_event.wait(self.poll_interval)
                else:
                    time.sleep(self.poll_interval)

    def _terminate(self) -> None:
        for proc in self._procs:
            if proc.poll() is None:
                proc.terminate()
        for proc in self._procs:
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            if proc.stdout is not None and not proc.stdout.closed:
                proc.stdout.close()

    @staticmethod
    def _position(handle: IO[bytes] | None) -> int:
        if handle is None or handle.closed:
            return 0
        # The child shares this file description, so its offset is the bytes consumed
        return os.lseek(handle.fileno(), 0, os.SEEK_CUR)

    @staticmethod
    def _size(handle: IO[bytes] | None) -> int:
        if handle is None or handle.closed:
            return 0
        return os.fstat(handle.fileno()).st_size
