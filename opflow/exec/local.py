"""Execution capability running everything on the local machine.

Useful for development models whose hosts are the machine the engine runs
on, and for tests. Variables are injected the same way for commands and
scripts:

1. As arguments: ``args`` are appended to the command line.
2. As environment variables: ``env`` entries are added on top of the
   engine's own environment.

Example:
    executor = LocalExecutor()
    executor.execute(host, CommandRequest('uname', ('-r',)))
    # CommandResult(stdout='6.8.0\\n', stderr='', exit_code=0)
"""

import os
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from opflow.exceptions import RemoteExecutionError
from .capability import (
    CommandRequest, CommandResult, ExecRequest, FileCopyRequest, Host,
    MaterializeResult,
)


class LocalExecutor:
    """Runs commands and scripts with ``subprocess`` on this machine.

    Attributes:
        shell: Interpreter for scripts without an explicit one.
        root: Optional directory prepended to destination paths of file
              copies (keeps tests out of the real filesystem).
        timeout: Seconds before a command is abandoned, or None.
    """

    def __init__(self, shell: str = '/bin/sh', root: Optional[Path] = None,
                 timeout: Optional[float] = None):
        self.shell = shell
        self.root = Path(root) if root is not None else None
        self.timeout = timeout

    def _build_environment(self, extra: Dict[str, str]) -> Dict[str, str]:
        """Copy of os.environ with the request's variables added."""
        env = os.environ.copy()
        for key, value in extra.items():
            env[key] = str(value)
        return env

    def _wrap_user(self, argv: List[str], run_as: Optional[str]) -> List[str]:
        if run_as:
            return ['sudo', '-n', '-u', run_as, '--'] + argv
        return argv

    def _run(self, host: Host, argv: List[str], env: Dict[str, str],
             stdin: Optional[str] = None) -> CommandResult:
        try:
            result = subprocess.run(
                argv,
                env=self._build_environment(env),
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise RemoteExecutionError(host.name, e) from e
        return CommandResult(result.stdout, result.stderr, result.returncode)

    def execute(self, host: Host, request: ExecRequest) -> CommandResult:
        if isinstance(request, CommandRequest):
            command = request.cmd
            if request.args:
                command += ' ' + ' '.join(shlex.quote(a) for a in request.args)
            argv = self._wrap_user([self.shell, '-c', command], request.run_as)
            return self._run(host, argv, request.env)

        with tempfile.NamedTemporaryFile('w', suffix='.sh', delete=False) as f:
            f.write(request.source)
            script_path = f.name
        try:
            interpreter = shlex.split(request.interpreter or self.shell)
            argv = self._wrap_user(interpreter + [script_path, *request.args],
                                   request.run_as)
            return self._run(host, argv, request.env)
        finally:
            os.unlink(script_path)

    def _destination(self, dst_path: str) -> Path:
        if self.root is None:
            return Path(dst_path)
        return self.root / dst_path.lstrip('/')

    def materialize(self, host: Host, request: FileCopyRequest) -> MaterializeResult:
        dst = self._destination(request.dst_path)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            dst.write_text(request.content)
        except OSError as e:
            raise RemoteExecutionError(host.name, e) from e

        metadata = {'path': str(dst)}
        for tool, value in (('chmod', request.chmod), ('chown', request.chown)):
            if not value:
                continue
            result = self._run(host, self._wrap_user([tool, value, str(dst)],
                                                     request.run_as), {})
            if not result.success:
                raise RemoteExecutionError(
                    host.name, f"{tool} {value} failed: {result.stderr.strip()}",
                    exit_code=result.exit_code, stderr=result.stderr)
            metadata[tool] = value
        return MaterializeResult(request.content, metadata)

    def __repr__(self) -> str:
        return f"LocalExecutor(shell={self.shell!r})"
