"""Test external tool execution"""

import sys

import pytest

from bpmkey.analysis.runner import ToolResult, run_tool


def python_args(code):
    return ["-c", code]


class TestRunTool:
    """Test run_tool against real child processes"""

    @pytest.mark.asyncio
    async def test_captures_stdout(self):
        """Test a successful run"""
        result = await run_tool(sys.executable, python_args("print('bpm 128')"), timeout=30)
        assert result.exit_code == 0
        assert result.succeeded
        assert result.stdout.strip() == "bpm 128"
        assert result.signal is None
        assert result.timed_out is False

    @pytest.mark.asyncio
    async def test_nonzero_exit_code_and_stderr(self):
        """Test failures come back as data, not exceptions"""
        code = "import sys; sys.stderr.write('AUBIO ERROR: failed opening file'); sys.exit(3)"
        result = await run_tool(sys.executable, python_args(code), timeout=30)
        assert result.exit_code == 3
        assert not result.succeeded
        assert "failed opening" in result.stderr

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        """Test spawn failure does not raise"""
        result = await run_tool("bpmkey-no-such-tool-xyz", ["--version"], timeout=5)
        assert isinstance(result, ToolResult)
        assert result.exit_code is None
        assert result.stdout == ""
        assert result.stderr

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        """Test a hanging tool is killed and reported"""
        code = "import sys, time; print('partial', flush=True); time.sleep(30)"
        result = await run_tool(sys.executable, python_args(code), timeout=3)
        assert result.timed_out is True
        assert result.exit_code is None
        assert "partial" in result.stdout

    @pytest.mark.asyncio
    async def test_stdout_cap(self):
        """Test stdout beyond the cap is discarded"""
        code = "import sys; sys.stdout.write('x' * 200000)"
        result = await run_tool(sys.executable, python_args(code), timeout=30, max_stdout_bytes=1000)
        assert len(result.stdout) == 1000

    @pytest.mark.asyncio
    async def test_stderr_cap(self):
        """Test stderr beyond the cap is discarded"""
        code = "import sys; sys.stderr.write('e' * 5000)"
        result = await run_tool(sys.executable, python_args(code), timeout=30, max_stderr_bytes=100)
        assert result.stderr == "e" * 100
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self):
        """Test undecodable output does not raise"""
        code = "import sys; sys.stdout.buffer.write(b'bpm \\xff 120')"
        result = await run_tool(sys.executable, python_args(code), timeout=30)
        assert result.exit_code == 0
        assert "120" in result.stdout
