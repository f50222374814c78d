"""Execution capability: the engine's only way to act on a host.

The transport (SSH, local shell, containers) lives outside the engine and
implements the ExecutionCapability protocol. Requests are plain frozen
dataclasses so that they can be recorded and compared in tests.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Tuple, Union, runtime_checkable

from opflow.exceptions import ExpressionError, RemoteExecutionError
from opflow.model import NodeKind, NodeRef


@dataclass(frozen=True)
class Host:
    """A host entry selected from the model.

    Attributes:
        name: Key of the entry (or its ``hostname`` in a sequence).
        hostname: ``hostname`` attribute, defaulting to ``name``.
        address: First of ``ip``, ``ip4``, ``ip6`` if present.
        node: The host's mapping node.
    """
    name: str
    hostname: str
    address: Optional[str] = None
    node: Optional[NodeRef] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_node(cls, node: NodeRef) -> 'Host':
        """Build a Host from a mapping node.

        Raises:
            ExpressionError: If the node is not a mapping.
        """
        if node.kind is not NodeKind.MAPPING:
            raise ExpressionError(
                f"Host selection must yield mappings, got {node.kind.value}"
                + (f" at '{node.path}'" if node.is_attached else ''))
        value = node.value
        hostname = value.get('hostname')
        name = node.key or (str(hostname) if hostname is not None else None)
        if name is None:
            name = str(node.path) if node.is_attached else f'host{node.index or 0}'
        address = next((str(value[k]) for k in ('ip', 'ip4', 'ip6')
                        if value.get(k) is not None), None)
        return cls(name, str(hostname) if hostname is not None else name,
                   address, node)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class CommandRequest:
    cmd: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    run_as: Optional[str] = None
    read_only: bool = False


@dataclass(frozen=True)
class ScriptRequest:
    """Script to run; ``source`` holds its content."""
    source: str
    src_path: Optional[str] = None
    interpreter: Optional[str] = None
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    run_as: Optional[str] = None
    read_only: bool = False


@dataclass(frozen=True)
class FileCopyRequest:
    """File to materialize at ``dst_path``; ``content`` is already rendered
    when the copy is templated."""
    src_path: str
    dst_path: str
    content: str
    templated: bool = False
    chown: Optional[str] = None
    chmod: Optional[str] = None
    run_as: Optional[str] = None
    read_only: bool = False


@dataclass(frozen=True)
class CommandResult:
    stdout: str = ''
    stderr: str = ''
    exit_code: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class MaterializeResult:
    content: str = ''
    metadata: Dict[str, str] = field(default_factory=dict)


ExecRequest = Union[CommandRequest, ScriptRequest]


@runtime_checkable
class ExecutionCapability(Protocol):
    """Protocol implemented by transports.

    Both methods may raise RemoteExecutionError. A non-zero exit code may
    also be returned as a CommandResult; the executor converts it.
    """

    def execute(self, host: Host, request: ExecRequest) -> CommandResult:
        ...

    def materialize(self, host: Host, request: FileCopyRequest) -> MaterializeResult:
        ...


def check_result(host: Host, request: ExecRequest,
                 result: CommandResult) -> CommandResult:
    """Turn a non-zero exit code into RemoteExecutionError."""
    if result.success:
        return result
    what = request.cmd if isinstance(request, CommandRequest) else (
        request.src_path or 'inline script')
    raise RemoteExecutionError(
        host.name, f"'{what}' exited with code {result.exit_code}",
        exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr)
