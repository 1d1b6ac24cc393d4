"""Tests for subprocess execution and script rendering."""

import pytest
from jinja2 import UndefinedError

from branchd.commands import run_command, run_script
from branchd.errors import CommandError
from branchd.templates import render_script


class TestRunCommand:
    """run_command() returns combined output and raises on failure."""

    async def test_returns_output(self) -> None:
        assert await run_command(["sh", "-c", "echo out; echo err >&2"]) == "out\nerr\n"

    async def test_nonzero_exit(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            await run_command(["sh", "-c", "echo broken; exit 3"], label="broken step")
        assert exc_info.value.returncode == 3
        assert exc_info.value.output == "broken\n"
        assert "broken step" in str(exc_info.value)

    async def test_unchecked_exit(self) -> None:
        assert await run_command(["sh", "-c", "echo partial; exit 1"], check=False) == "partial\n"

    async def test_timeout(self) -> None:
        with pytest.raises(CommandError, match="timed out") as exc_info:
            await run_command(["sleep", "5"], timeout=0.1)
        assert exc_info.value.returncode is None

    async def test_extra_env(self) -> None:
        output = await run_command(["sh", "-c", 'echo "$BRANCHD_TEST"'], env={"BRANCHD_TEST": "yes"})
        assert output == "yes\n"


class TestRunScript:
    async def test_runs_bash_body(self) -> None:
        assert await run_script("set -e\nx=2\necho $((x * 21))\n") == "42\n"

    async def test_label_hides_script(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            await run_script("PASSWORD=hunter2; exit 1", label="create branch x")
        assert "hunter2" not in str(exc_info.value)


class TestRenderScript:
    def test_missing_variable_is_an_error(self) -> None:
        with pytest.raises(UndefinedError):
            render_script("run_sql.sh.j2", pg_version="16", port=5432)

    def test_free_form_values_are_quoted(self) -> None:
        script = render_script(
            "run_sql.sh.j2",
            pg_version="16",
            port=5432,
            database="db; rm -rf /",
            sql="SELECT 1;",
            tuples_only=False,
        )
        assert "-d 'db; rm -rf /'" in script
        assert "-tA" not in script
