"""Runs the framework's course compiler as an external process."""

import asyncio
import logging
import shlex
import subprocess
from pathlib import Path

from courseport.config import settings
from courseport.exceptions import ExternalToolError

logger = logging.getLogger(__name__)


class CourseCompiler:
    """
    Wraps the compiler command line.

    The command template may use {mode} ("dev" for previews, "prod" otherwise),
    {theme} and {menu}.
    """

    def __init__(self, command: str | None = None):
        self.command = command or settings.compiler_command

    def format_command(self, dev_mode: bool = False, theme: str = "", menu: str = "") -> list[str]:
        return shlex.split(self.command.format(mode="dev" if dev_mode else "prod", theme=theme, menu=menu))

    async def compile(self, working_dir: Path, dev_mode: bool = False, theme: str = "", menu: str = "") -> str:
        """
        Compile the course in working_dir, returning the captured output.

        Raises:
            ExternalToolError: the command is missing or exits nonzero
        """
        args = self.format_command(dev_mode, theme, menu)
        command = shlex.join(args)
        logger.info(f"Compiling course in {working_dir}: {command}")
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                args,
                cwd=working_dir,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise ExternalToolError(command, output=str(e)) from e

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            logger.error(f"Compiler exited with {result.returncode}")
            raise ExternalToolError(command, returncode=result.returncode, output=output)
        return output
