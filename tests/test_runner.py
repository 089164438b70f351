import gzip
import io
import sys
from pathlib import Path

import pytest

from stackbackup.errors import CommandTimeout
import stackbackup.runner as runner_module
from stackbackup.runner import CommandRunner

PY = sys.executable


def test_run_captures_output_and_status():
    result = CommandRunner().run(PY, ["-c", "import sys; print('hello'); sys.stderr.write('warn'); sys.exit(3)"])

    assert result.returncode == 3
    assert not result.ok
    assert result.stdout.strip() == "hello"
    assert result.stderr == "warn"


def test_run_feeds_stdin_stream():
    payload = b"x" * 300_000
    script = "import sys; data = sys.stdin.buffer.read(); print(len(data))"

    result = CommandRunner().run(PY, ["-c", script], stdin=io.BytesIO(payload))

    assert result.ok
    assert result.stdout.strip() == str(len(payload))


def test_stream_copies_stdout_into_sink():
    sink = io.BytesIO()
    script = "import sys; [sys.stdout.write('line %d\\n' % i) for i in range(20000)]"

    result = CommandRunner().stream(PY, ["-c", script], sink=sink)

    assert result.ok
    lines = sink.getvalue().splitlines()
    assert len(lines) == 20000
    assert lines[-1] == b"line 19999"


def test_run_uses_working_directory(tmp_path):
    result = CommandRunner().run(PY, ["-c", "import os; print(os.getcwd())"], cwd=str(tmp_path))
    assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()


def test_timeout_kills_the_process():
    with pytest.raises(CommandTimeout) as excinfo:
        CommandRunner().stream(PY, ["-c", "import time; time.sleep(30)"], sink=io.BytesIO(), timeout=0.5)
    assert excinfo.value.timeout == 0.5


def test_missing_program_raises_oserror():
    with pytest.raises(OSError):
        CommandRunner().run("definitely-not-a-real-program-xyz", [])


def test_unreadable_stdin_stream_is_raised_after_the_process_exits():
    truncated = io.BytesIO(gzip.compress(b"INSERT INTO t VALUES (1);\n" * 5000)[:-64])
    script = "import sys; sys.stdin.buffer.read()"

    with pytest.raises(EOFError):
        CommandRunner().run(PY, ["-c", script], stdin=gzip.GzipFile(fileobj=truncated))


def test_timer_firing_after_a_clean_exit_is_not_a_timeout(monkeypatch):
    class LateTimer:
        """Fires only when cancelled, after the process has already exited."""

        def __init__(self, interval, function):
            self.function = function
            self.daemon = False

        def start(self):
            pass

        def cancel(self):
            self.function()

    monkeypatch.setattr(runner_module.threading, "Timer", LateTimer)

    result = CommandRunner().run(PY, ["-c", "print('done')"], timeout=5)

    assert result.ok
    assert result.stdout.strip() == "done"
