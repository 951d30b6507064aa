"""
Tests for the external compiler wrapper
"""

import shlex
import sys

import pytest

from courseport.exceptions import ExternalToolError
from courseport.services.compiler import CourseCompiler


def python_command(code):
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


class TestCourseCompiler:
    def test_format_command(self):
        compiler = CourseCompiler("grunt server-build:{mode} --theme={theme} --menu={menu}")
        assert compiler.format_command(dev_mode=True, theme="vanilla", menu="boxMenu") == [
            "grunt",
            "server-build:dev",
            "--theme=vanilla",
            "--menu=boxMenu",
        ]
        assert compiler.format_command()[1] == "server-build:prod"

    async def test_output_returned(self, tmp_path):
        compiler = CourseCompiler(python_command("import os; print(os.listdir('.'))"))
        (tmp_path / "marker.txt").write_text("x", encoding="utf-8")
        output = await compiler.compile(tmp_path)
        assert "marker.txt" in output

    async def test_nonzero_exit(self, tmp_path):
        compiler = CourseCompiler(python_command("import sys; sys.stderr.write('boom'); sys.exit(3)"))
        with pytest.raises(ExternalToolError) as exc_info:
            await compiler.compile(tmp_path)
        assert exc_info.value.details["returncode"] == 3
        assert exc_info.value.details["output"] == "boom"

    async def test_missing_command(self, tmp_path):
        with pytest.raises(ExternalToolError):
            await CourseCompiler("definitely-not-a-compiler-xyz").compile(tmp_path)
