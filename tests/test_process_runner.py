"""ProcessRunner unit tests.

Test coverage:
- Interpreter flag extraction and self re-invocation
- Environment merge and local virtualenv paths
- Launching (cwd, env, stdio modes, native options)
- ProcessHandle signals and pipe closing
- Termination watcher (timeout, cancel signal)
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path

import anyio
import pytest

from subspawn.runtime.process_runner import (
    IS_WINDOWS,
    ProcessHandle,
    ProcessRunner,
    add_local_paths,
    build_env,
    interpreter_flags,
    resolve_interpreter,
    watch_termination,
)
from subspawn.types import SpawnOptions


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def runner() -> ProcessRunner:
    """Create ProcessRunner instance."""
    return ProcessRunner()


async def _read_all(handle: ProcessHandle) -> str:
    stdout = await handle.stdout.read()
    await handle.wait()
    return stdout.decode().strip()


# =============================================================================
# Interpreter Tests
# =============================================================================


class TestInterpreterFlags:
    """Extraction of interpreter options from a command line."""

    def test_no_flags(self):
        """A plain script invocation has no flags."""
        assert interpreter_flags(["python", "script.py", "-B"]) == []

    def test_flags_before_script(self):
        """Options up to the script are kept; script options are not."""
        assert interpreter_flags(["python", "-B", "-u", "script.py", "-O"]) == ["-B", "-u"]

    def test_value_options(self):
        """-W and -X take a value, attached or separate."""
        argv = ["python", "-W", "error", "-Xutf8", "-c", "pass"]
        assert interpreter_flags(argv) == ["-W", "error", "-X", "utf8"]

    def test_stops_at_command_and_module(self):
        """-c and -m end the options, even inside a group."""
        assert interpreter_flags(["python", "-Bc", "print(1)"]) == ["-B"]
        assert interpreter_flags(["python", "-mpytest", "-x"]) == []

    def test_interactive_dropped(self):
        """-i is removed, alone or grouped."""
        assert interpreter_flags(["python", "-i", "-B", "script.py"]) == ["-B"]
        assert interpreter_flags(["python", "-iB", "script.py"]) == ["-B"]

    def test_long_options(self):
        """Long options are kept with their value."""
        argv = ["python", "--check-hash-based-pycs", "never", "-", "x"]
        assert interpreter_flags(argv) == ["--check-hash-based-pycs", "never"]


class TestResolveInterpreter:
    """Self re-invocation of the running interpreter."""

    @pytest.mark.parametrize("name", ["python", "PYTHON", "python3", f"python{sys.version_info[0]}.{sys.version_info[1]}"])
    def test_interpreter_names(self, name: str):
        """Interpreter names run the current interpreter with its flags."""
        file, arguments = resolve_interpreter(
            name, ["-c", "pass"], executable="/opt/py/bin/python3", argv=["python3", "-B", "app.py"]
        )
        assert file == "/opt/py/bin/python3"
        assert arguments == ["-B", "-c", "pass"]

    def test_exe_suffix(self):
        """The .exe suffix is ignored."""
        file, _ = resolve_interpreter("python.exe", [], executable="C:\\Python\\python.exe", argv=["python"])
        assert file == "C:\\Python\\python.exe"

    def test_executable_basename(self):
        """The running executable's own name is recognized."""
        file, _ = resolve_interpreter("pypy3", [], executable="/usr/bin/pypy3", argv=["pypy3"])
        assert file == "/usr/bin/pypy3"

    def test_paths_left_alone(self):
        """Explicit interpreter paths are not rewritten."""
        assert resolve_interpreter("/usr/bin/python", ["x"], executable="/opt/python") == ("/usr/bin/python", ["x"])

    def test_other_programs(self):
        """Other programs are not rewritten."""
        assert resolve_interpreter("node", ["x"], executable="/opt/python") == ("node", ["x"])


# =============================================================================
# Environment Tests
# =============================================================================


class TestEnvironment:
    """Environment merge and PATH changes."""

    def test_inherit_by_default(self):
        """No env option and no prefer_local means inherit."""
        assert build_env(SpawnOptions(), "/work", environ={"A": "1"}) is None

    def test_overrides_merged(self):
        """Overrides are merged over the ambient environment."""
        environ = {"A": "1", "B": "2"}
        env = build_env(SpawnOptions(env={"B": "3"}), "/work", environ=environ)
        assert env == {"A": "1", "B": "3"}
        assert environ == {"A": "1", "B": "2"}

    def test_local_paths(self):
        """cwd and its ancestors' .venv bin directories come first."""
        cwd = os.path.join(os.sep, "a", "b")
        env = add_local_paths({"PATH": "/usr/bin"}, cwd, platform="linux")
        assert env["PATH"].split(os.pathsep) == [
            os.path.join(cwd, ".venv", "bin"),
            os.path.join(os.sep, "a", ".venv", "bin"),
            os.path.join(os.sep, ".venv", "bin"),
            "/usr/bin",
        ]

    def test_local_paths_not_duplicated(self):
        """Directories already on PATH are not added again."""
        cwd = os.path.join(os.sep, "a")
        existing = os.path.join(cwd, ".venv", "bin")
        env = add_local_paths({"PATH": existing}, cwd, platform="linux")
        assert env["PATH"].split(os.pathsep).count(existing) == 1

    def test_local_paths_windows(self):
        """Windows uses Scripts and the Path spelling is folded into PATH."""
        env = add_local_paths({"Path": "C:\\bin"}, os.sep, platform="win32")
        assert "Path" not in env
        assert env["PATH"].split(os.pathsep)[0] == os.path.join(os.sep, ".venv", "Scripts")

    def test_prefer_local_option(self):
        """prefer_local applies to the merged environment."""
        env = build_env(
            SpawnOptions(env={"X": "1"}, prefer_local=True), os.sep, environ={"PATH": ""}
        )
        assert env["X"] == "1"
        assert os.path.join(os.sep, ".venv", "bin" if not IS_WINDOWS else "Scripts") in env["PATH"]


# =============================================================================
# Launch Tests
# =============================================================================


class TestLaunch:
    """Starting processes."""

    @pytest.mark.asyncio
    async def test_simple_command(self, runner: ProcessRunner):
        """Test running a simple command."""
        handle = await runner.launch(sys.executable, ["-c", "print('hello')"], SpawnOptions())
        assert handle.pid > 0
        assert await _read_all(handle) == "hello"
        assert handle.returncode == 0

    @pytest.mark.asyncio
    async def test_python_name(self, runner: ProcessRunner):
        """'python' runs the current interpreter."""
        handle = await runner.launch("python", ["-c", "import sys; print(sys.version)"], SpawnOptions())
        assert await _read_all(handle) == sys.version.strip()

    @pytest.mark.asyncio
    async def test_cwd(self, temp_workspace: Path, runner: ProcessRunner):
        """The working directory is applied."""
        options = SpawnOptions(cwd=temp_workspace)
        handle = await runner.launch(sys.executable, ["-c", "import os; print(os.getcwd())"], options)
        assert Path(await _read_all(handle)).resolve() == temp_workspace.resolve()

    @pytest.mark.asyncio
    async def test_env(self, runner: ProcessRunner):
        """Overrides reach the child, ambient variables too."""
        options = SpawnOptions(env={"SUBSPAWN_TEST_VALUE": "42"})
        code = "import os; print(os.environ['SUBSPAWN_TEST_VALUE'], 'PATH' in os.environ)"
        handle = await runner.launch(sys.executable, ["-c", code], options)
        assert await _read_all(handle) == "42 True"
        assert "SUBSPAWN_TEST_VALUE" not in os.environ

    @pytest.mark.asyncio
    async def test_ignored_streams(self, runner: ProcessRunner):
        """'ignore' and 'inherit' leave no pipe behind."""
        options = SpawnOptions(stdin="ignore", stdout="ignore", stderr="inherit")
        handle = await runner.launch(sys.executable, ["-c", "pass"], options)
        assert handle.stdin is None
        assert handle.stdout is None
        assert handle.stderr is None
        assert await handle.wait() == 0

    @pytest.mark.asyncio
    async def test_invalid_stdio_mode(self, runner: ProcessRunner):
        """Unknown stdio names are rejected."""
        with pytest.raises(ValueError, match='"stdout" option'):
            await runner.launch(sys.executable, ["-c", "pass"], SpawnOptions(stdout="nope"))

    @pytest.mark.asyncio
    async def test_file_not_found(self, runner: ProcessRunner):
        """Missing programs raise OSError."""
        with pytest.raises(OSError):
            await runner.launch("subspawn-no-such-program", [], SpawnOptions())

    @pytest.mark.asyncio
    async def test_native_options(self, runner: ProcessRunner):
        """Unknown options are passed to the spawn primitive."""
        if IS_WINDOWS:
            pytest.skip("POSIX sessions")
        options = SpawnOptions.from_kwargs(start_new_session=True)
        handle = await runner.launch(sys.executable, ["-c", "import os; print(os.getsid(0))"], options)
        assert int(await _read_all(handle)) == handle.pid

    @pytest.mark.asyncio
    async def test_invalid_native_option(self, runner: ProcessRunner):
        """Invalid native options are rejected by the primitive."""
        with pytest.raises(ValueError):
            await runner.launch(sys.executable, ["-c", "pass"], SpawnOptions.from_kwargs(universal_newlines=True))


# =============================================================================
# ProcessHandle Tests
# =============================================================================


class TestProcessHandle:
    """Signals, stdin and pipe closing."""

    @pytest.mark.asyncio
    async def test_feed_stdin(self, runner: ProcessRunner):
        """Input is written and stdin closed."""
        handle = await runner.launch(sys.executable, ["-c", "import sys; print(sys.stdin.read().upper())"], SpawnOptions())
        await handle.feed_stdin(b"abc")
        assert await _read_all(handle) == "ABC"

    @pytest.mark.asyncio
    async def test_terminate(self, runner: ProcessRunner):
        """terminate() stops a running process."""
        handle = await runner.launch(sys.executable, ["-c", "import time; time.sleep(30)"], SpawnOptions())
        assert handle.terminate() is True
        returncode = await handle.wait()
        assert returncode != 0

    @pytest.mark.asyncio
    async def test_signal_after_exit(self, runner: ProcessRunner):
        """Signaling an exited process does not raise."""
        handle = await runner.launch(sys.executable, ["-c", "pass"], SpawnOptions())
        await _read_all(handle)
        handle.send_signal(signal.SIGTERM)
        assert handle.returncode == 0

    @pytest.mark.asyncio
    async def test_close_output(self, runner: ProcessRunner):
        """Closing stdout ends our reader."""
        handle = await runner.launch(sys.executable, ["-c", "import time; time.sleep(1)"], SpawnOptions())
        handle.close_output("stdout")
        assert await asyncio.wait_for(handle.stdout.read(), 5) == b""
        await handle.wait()


# =============================================================================
# Termination Tests
# =============================================================================


class TestWatchTermination:
    """Timeout and cancel signal."""

    @pytest.mark.asyncio
    async def test_timeout(self, runner: ProcessRunner):
        """The process is terminated after the timeout."""
        handle = await runner.launch(sys.executable, ["-c", "import time; time.sleep(30)"], SpawnOptions())
        await watch_termination(handle, SpawnOptions(timeout=0.2))
        returncode = await asyncio.wait_for(handle.wait(), 10)
        if not IS_WINDOWS:
            assert returncode == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_cancel_signal(self, runner: ProcessRunner):
        """Setting the cancel signal terminates the process."""
        event = anyio.Event()
        handle = await runner.launch(sys.executable, ["-c", "import time; time.sleep(30)"], SpawnOptions())
        watcher = asyncio.create_task(watch_termination(handle, SpawnOptions(signal=event)))
        await asyncio.sleep(0.1)
        assert not watcher.done()
        event.set()
        await watcher
        assert await asyncio.wait_for(handle.wait(), 10) != 0

    @pytest.mark.asyncio
    async def test_kill_signal(self, runner: ProcessRunner):
        """kill_signal selects the signal."""
        if IS_WINDOWS:
            pytest.skip("POSIX signals")
        handle = await runner.launch(sys.executable, ["-c", "import time; time.sleep(30)"], SpawnOptions())
        await watch_termination(handle, SpawnOptions(timeout=0.1, kill_signal=signal.SIGKILL))
        assert await asyncio.wait_for(handle.wait(), 10) == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_cancelled_watcher(self, runner: ProcessRunner):
        """Cancelling the watcher leaves the process alone."""
        handle = await runner.launch(sys.executable, ["-c", "print('done')"], SpawnOptions())
        watcher = asyncio.create_task(watch_termination(handle, SpawnOptions(timeout=30)))
        await asyncio.sleep(0)
        watcher.cancel()
        with pytest.raises(asyncio.CancelledError):
            await watcher
        assert await _read_all(handle) == "done"
        assert handle.returncode == 0
