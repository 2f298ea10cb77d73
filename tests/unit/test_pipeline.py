"""
Tests for partvault.engine.pipeline module.

Stages are small python programs so the tests run anywhere.
"""

import sys
import threading
import time
from pathlib import Path

import pytest

from partvault.core.job import JobCancelledException
from partvault.engine.pipeline import Pipeline, PipelineResult, Stage

CAT = "import shutil, sys; shutil.copyfileobj(sys.stdin.buffer, sys.stdout.buffer)"
UPPER = "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read().upper())"
FAIL = "import sys; sys.stdin.buffer.read(); sys.stderr.write('checksum mismatch\\n'); sys.exit(2)"
SLOW = "import time; time.sleep(30)"


def py(name: str, code: str) -> Stage:
    return Stage.of(name, [sys.executable, "-c", code])


class TestPipeline:
    """Tests for Pipeline."""

    def test_streams_source_to_sink(self, temp_dir: Path) -> None:
        source = temp_dir / "in.bin"
        sink = temp_dir / "out.bin"
        source.write_bytes(b"partition bytes " * 1000)

        result = Pipeline([py("cat", CAT), py("upper", UPPER)], source=source, sink=sink).run()

        assert result.success
        assert result.returncodes == [0, 0]
        assert sink.read_bytes() == b"PARTITION BYTES " * 1000
        assert result.bytes_out == 16000
        assert result.bytes_in == 16000

    def test_stage_without_source(self, temp_dir: Path) -> None:
        sink = temp_dir / "out.bin"
        producer = py("produce", "import sys; sys.stdout.buffer.write(b'x' * 5000)")

        result = Pipeline([producer], sink=sink).run()

        assert result.success
        assert sink.stat().st_size == 5000

    def test_failure_reports_stage_and_stderr(self, temp_dir: Path) -> None:
        source = temp_dir / "in.bin"
        source.write_bytes(b"data")

        result = Pipeline([py("cat", CAT), py("verify", FAIL)], source=source, sink=temp_dir / "out").run()

        assert not result.success
        assert result.first_failure == "verify"
        assert "verify exited 2: checksum mismatch" in result.diagnostic
        assert "verify" in result.failed_stages

    def test_missing_executable(self, temp_dir: Path) -> None:
        stage = Stage.of("ghost", ["/nonexistent/partvault-tool"])

        result = Pipeline([stage], sink=temp_dir / "out").run()

        assert not result.success
        assert result.returncodes == [127]

    def test_stage_exit_callback(self, temp_dir: Path) -> None:
        source = temp_dir / "in.bin"
        source.write_bytes(b"abc")
        exited: list[tuple[str, int]] = []

        Pipeline(
            [py("cat", CAT), py("upper", UPPER)],
            source=source,
            sink=temp_dir / "out",
            on_stage_exit=lambda stage, rc: exited.append((stage.name, rc)),
        ).run()

        assert sorted(exited) == [("cat", 0), ("upper", 0)]

    def test_cancellation_tears_down_stages(self, temp_dir: Path) -> None:
        cancel = threading.Event()
        pipeline = Pipeline(
            [py("slow", SLOW), py("cat", CAT)],
            sink=temp_dir / "out",
            cancel_event=cancel,
            poll_interval=0.05,
        )
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        started = time.monotonic()
        try:
            with pytest.raises(JobCancelledException):
                pipeline.run()
        finally:
            timer.cancel()

        assert time.monotonic() - started < 10

    def test_empty_pipeline(self) -> None:
        with pytest.raises(ValueError):
            Pipeline([]).run()


class TestPipelineResult:
    def test_first_failure_prefers_real_exit(self) -> None:
        stages = [Stage.of("a", ["a"]), Stage.of("b", ["b"])]
        result = PipelineResult(stages=stages, returncodes=[-15, 1], stderr=["", "bad\n"])
        assert result.first_failure == "b"

    def test_diagnostic_without_output(self) -> None:
        result = PipelineResult(stages=[Stage.of("a", ["a"])], returncodes=[3], stderr=[""])
        assert result.diagnostic == "a exited 3: no output"
