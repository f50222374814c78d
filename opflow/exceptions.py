"""Error taxonomy for opflow.

Every error raised by the engine derives from OpflowError. The
``recoverable`` flag tells the task-tree executor whether a ``try`` block
may catch the error; non-recoverable errors always abort the host's task
list.
"""

from typing import Any, List, Optional


class OpflowError(Exception):
    """Base class for all engine errors."""

    recoverable = False

    def to_mapping(self) -> dict:
        """Render the error as a plain mapping (bound by ``catch`` handlers)."""
        return {
            'type': type(self).__name__,
            'message': str(self),
        }


class MalformedModel(OpflowError):
    """Model tree is cyclic or contains unaddressable node types."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"{message} (at '{path}')"
        super().__init__(message)


class ConfigError(OpflowError):
    """Invalid engine configuration."""


class ExpressionError(OpflowError):
    """Expression cannot be evaluated (bad arity, type mismatch, missing
    required value)."""


class ExpressionSyntaxError(ExpressionError):
    """Expression text cannot be parsed."""

    def __init__(self, text: str, detail: str):
        self.text = text
        self.detail = detail
        super().__init__(f"Invalid expression {text!r}: {detail}")


class UnknownProcError(OpflowError):
    """A proc, fn or query reference does not resolve."""


class RemoteExecutionError(OpflowError):
    """Host-side command, script or file operation failed."""

    recoverable = True

    def __init__(self, host: str, cause: Any, exit_code: Optional[int] = None,
                 stdout: str = '', stderr: str = ''):
        self.host = host
        self.cause = cause
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"[{host}] {cause}")

    def to_mapping(self) -> dict:
        data = super().to_mapping()
        data.update(host=self.host, exit_code=self.exit_code,
                    stdout=self.stdout, stderr=self.stderr)
        return data


class ValidationError(OpflowError):
    """Raised by a ``throw`` task, a read-only violation or unusable task output."""

    recoverable = True


class CacheComputationError(OpflowError):
    """A query body failed; the cache was not populated.

    Recoverable unless the underlying failure is not.
    """

    def __init__(self, query: str, host: str, cause: BaseException):
        self.query = query
        self.host = host
        self.cause = cause
        super().__init__(f"Query '{query}' failed on '{host}': {cause}")

    @property
    def recoverable(self) -> bool:
        return getattr(self.cause, 'recoverable', True)


class DelegationError(OpflowError):
    """A delegated ``exec`` proc failed on one or more hosts."""

    def __init__(self, proc: str, errors: List[OpflowError]):
        self.proc = proc
        self.errors = list(errors)
        details = '; '.join(str(e) for e in self.errors) or 'no details'
        super().__init__(f"Delegated proc '{proc}' failed: {details}")

    @property
    def recoverable(self) -> bool:
        return all(e.recoverable for e in self.errors)

    def to_mapping(self) -> dict:
        data = super().to_mapping()
        data['proc'] = self.proc
        data['errors'] = [e.to_mapping() for e in self.errors]
        return data
