"""
External command execution for the dump pipeline.

The PostgreSQL client binaries (``pg_dump``, ``psql``, ``createdb``,
``dropdb``) are reached through a :class:`CommandExecutor` so the pipeline can
be driven by a fake executor in tests.
"""

import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from pgmgr.config.configuration import Config
from pgmgr.config.logging_config import get_logger
from pgmgr.migrations.exceptions import CommandError

log = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def output(self) -> str:
        """Combined stdout and stderr, decoded for display."""
        return (self.stdout + self.stderr).decode("utf-8", errors="replace")


class CommandExecutor(ABC):
    """Runs a named external command and reports its output and exit status."""

    @abstractmethod
    def run(
        self,
        command: str,
        args: Sequence[str],
        input: Optional[bytes] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """Run ``command`` with ``args``.

        Args:
            command: Executable name, resolved through ``PATH``
            args: Arguments, not including the command itself
            input: Bytes written to the command's stdin
            env: Variables added to the inherited environment
        """


class SubprocessExecutor(CommandExecutor):
    """Runs commands as child processes and waits for them to finish."""

    def run(
        self,
        command: str,
        args: Sequence[str],
        input: Optional[bytes] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        full_env = dict(os.environ)
        if env:
            full_env.update(env)
        try:
            completed = subprocess.run(
                [command, *args],
                input=input,
                capture_output=True,
                env=full_env,
                check=False,
            )
        except FileNotFoundError as e:
            raise CommandError(f"{command} not found; is the PostgreSQL client installed?", command, 127) from e
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)


class PgTools:
    """Builds invocations of the PostgreSQL client binaries for one database."""

    def __init__(self, config: Config, executor: Optional[CommandExecutor] = None):
        self.config = config
        self.executor = executor or SubprocessExecutor()

    def connection_args(self) -> list[str]:
        args: list[str] = []
        if self.config.host:
            args += ["-h", self.config.host]
        if self.config.port:
            args += ["-p", str(self.config.port)]
        if self.config.username:
            args += ["-U", self.config.username]
        return args

    def environment(self) -> dict[str, str]:
        env: dict[str, str] = {"PGCLIENTENCODING": "UTF8"}
        if self.config.password:
            env["PGPASSWORD"] = self.config.password
        if self.config.sslmode:
            env["PGSSLMODE"] = self.config.sslmode
        return env

    def _run(self, command: str, args: list[str], input: Optional[bytes] = None) -> CommandResult:
        log.debug(f"Running {command} {' '.join(args)}")
        result = self.executor.run(command, args, input=input, env=self.environment())
        if result.returncode != 0:
            raise CommandError(
                f"{command} exited with status {result.returncode}: {result.stderr.decode('utf-8', errors='replace').strip()}",
                command,
                result.returncode,
                result.output,
            )
        return result

    def pg_dump(self, args: list[str]) -> bytes:
        """Run pg_dump against the configured database and return the script it printed, UTF-8 encoded."""
        args = [*self.connection_args(), "--encoding=UTF8", *args, self.config.database]
        return self._run("pg_dump", args).stdout

    def psql(self, args: list[str], input: Optional[bytes] = None) -> CommandResult:
        return self._run("psql", [*self.connection_args(), "-d", self.config.database, *args], input=input)

    def createdb(self) -> CommandResult:
        return self._run("createdb", [*self.connection_args(), self.config.database])

    def dropdb(self) -> CommandResult:
        return self._run("dropdb", [*self.connection_args(), self.config.database])
