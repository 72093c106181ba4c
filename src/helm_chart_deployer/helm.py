"""helm command line interface wrapper."""
from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .constants import DEFAULT_HELM_BINARY, DEFAULT_TIMEOUT_SECONDS
from .types import CommandResult, HelmCommandError


class HelmClient:
    """Runs helm commands and turns failures into HelmCommandError."""

    def __init__(
        self,
        binary: str = DEFAULT_HELM_BINARY,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.binary = binary
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def resolve_binary(self) -> str:
        """
        Locate the helm executable.

        Returns:
            Absolute path of the helm binary

        Raises:
            HelmCommandError: If the binary cannot be found
        """
        if Path(self.binary).is_file():
            return str(Path(self.binary).resolve())

        found = shutil.which(self.binary)
        if not found:
            raise HelmCommandError(f"helm binary '{self.binary}' not found in PATH")
        return found

    def repo_add(
        self,
        name: str,
        url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        pass_credentials: bool = False,
        force_update: bool = False,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        args = ["repo", "add", name, url]
        if username is not None and password is not None:
            args.extend(["--username", username, "--password", password])
        if pass_credentials:
            args.append("--pass-credentials")
        if force_update:
            args.append("--force-update")
        return self.run(args, cwd=cwd, secrets=[password] if password else None)

    def dependency_update(self, chart_dir: Path) -> CommandResult:
        return self.run(["dependency", "update"], cwd=chart_dir)

    def package(self, chart: str, version: str, cwd: Path) -> CommandResult:
        return self.run(["package", chart, "--version", version], cwd=cwd)

    def lint(self, chart: str, cwd: Path, strict: bool = False, values_files: Sequence[str] = ()) -> CommandResult:
        args = ["lint", chart]
        if strict:
            args.append("--strict")
        for values_file in values_files:
            args.extend(["--values", values_file])
        return self.run(args, cwd=cwd, stdout_level=logging.INFO)

    def template(self, chart: str, cwd: Path, values_files: Sequence[str] = ()) -> CommandResult:
        args = ["template"]
        for values_file in values_files:
            args.extend(["--values", values_file])
        args.append(chart)
        return self.run(args, cwd=cwd, log_stdout=False)

    def registry_login(self, host: str, username: str, password: str) -> CommandResult:
        """Log in to an OCI registry, passing the password on stdin."""
        return self.run(
            ["registry", "login", host, "--username", username, "--password-stdin"],
            stdin=password,
        )

    def push(self, archive: Union[str, Path], remote: str) -> CommandResult:
        return self.run(["push", str(archive), remote])

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        stdin: Optional[str] = None,
        stdout_level: int = logging.DEBUG,
        log_stdout: bool = True,
        secrets: Optional[Sequence[str]] = None,
    ) -> CommandResult:
        """
        Run a helm command.

        Args:
            args: Arguments following the helm binary
            cwd: Working directory
            stdin: Text passed to the process on standard input
            stdout_level: Log level used for standard output lines
            log_stdout: Whether standard output is logged at all
            secrets: Values masked when the command line is logged

        Returns:
            Captured command result

        Raises:
            HelmCommandError: If helm cannot be started, times out or exits non-zero
        """
        cmd: List[str] = [self.resolve_binary(), *args]
        display = self._display_command(cmd, secrets or [])
        location = str(cwd) if cwd else "."

        try:
            completed = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise HelmCommandError(
                f"Command '{display}' timed out after {self.timeout} seconds", cmd
            ) from e
        except OSError as e:
            raise HelmCommandError(f"Could not execute '{display}': {e}", cmd) from e

        self.logger.debug("When executing '%s' in '%s', result was %d", display, location, completed.returncode)
        if log_stdout:
            for line in completed.stdout.splitlines():
                self.logger.log(stdout_level, "Output: %s", line)
        for line in completed.stderr.splitlines():
            self.logger.error("Output: %s", line)

        if completed.returncode != 0:
            raise HelmCommandError(
                f"When executing '{display}' got result code '{completed.returncode}'",
                cmd,
                completed.returncode,
            )

        return CommandResult(
            command=cmd,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    @staticmethod
    def _display_command(cmd: Sequence[str], secrets: Sequence[str]) -> str:
        return shlex.join("****" if part in secrets else part for part in cmd)
