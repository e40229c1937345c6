'''Process/executor contract, process configuration and captured output'''

from dataclasses import dataclass, field
import enum
import logging
from pathlib import PurePosixPath
import threading
from typing import Protocol, Self

from .errors import StderrNotPiped, StdoutNotPiped

logger = logging.getLogger(__name__)

EXTENDED_DATA_STDERR = 1
'''SSH extended data type code carrying stderr'''

DEFAULT_MAX_OUTPUT = 64 * 1024 * 1024
'''default bound in bytes for each captured output stream'''


@dataclass
class ProcessConfiguration:
    '''how to start a process with `Executor.begin_execute`

    `ProcessConfiguration('sh', ['-c', 'cat'], redirect_stdin=True)`
    - `program` is looked up on `PATH` of the executing host
    - `args` are passed verbatim, no shell interpretation
    - `envs` are added to the inherited environment
    - `redirect_*` capture (or feed) the matching stream, streams that are
      not redirected are discarded
    - `disable_extra_reads` discards SSH extended data other than stderr
    - `user_id`, `group_id` and `process_group_id` are only supported by
      the local backend
    '''

    program: str
    args: list[str] = field(default_factory=list)
    envs: dict[str, str] = field(default_factory=dict)
    working_dir: PurePosixPath | str | None = None
    redirect_stdin: bool = False
    redirect_stdout: bool = False
    redirect_stderr: bool = False
    disable_extra_reads: bool = False
    user_id: int | None = None
    group_id: int | None = None
    process_group_id: int | None = None

    def arg(self, argument: str) -> Self:
        self.args.append(str(argument))
        return self

    def extend_args(self, arguments: list[str]) -> Self:
        self.args.extend(map(str, arguments))
        return self

    def env(self, key: str, value: str) -> Self:
        self.envs[key] = value
        return self

    def update_envs(self, environment: dict[str, str]) -> Self:
        self.envs.update(environment)
        return self

    def clear_env(self) -> Self:
        self.envs.clear()
        return self

    @property
    def argv(self) -> list[str]:
        '''program followed by its arguments'''
        return [self.program, *self.args]


@dataclass
class PartialProcessOutput:
    '''output captured so far from a running process'''

    stdout: bytes | None = None
    stderr: bytes | None = None
    stdout_extended: dict[int, bytes] = field(default_factory=dict)


@dataclass
class ProcessOutput:
    '''everything captured from a finished process

    - `status_code` is the exit status, the negated signal number when the
      process was killed by a signal, or `None` when neither was reported
    '''

    stdout: bytes | None = None
    stderr: bytes | None = None
    stdout_extended: dict[int, bytes] = field(default_factory=dict)
    status_code: int | None = None


class ProcessState(enum.Enum):
    '''lifecycle of a process handle'''

    RUNNING = 'running'
    SIGNALLED = 'signalled'
    EXITED = 'exited'


class OutputBuffers:
    '''bounded capture buffers shared by a process reader and its handle

    - the reader appends with `feed`, handles copy with `snapshot`
    - a stream that was not redirected has no buffer and its data is dropped
    - bytes beyond `limit` are dropped, so earlier snapshots stay prefixes
    '''

    def __init__(
        self,
        stdout: bool,
        stderr: bool,
        extended: bool = True,
        limit: int | None = DEFAULT_MAX_OUTPUT
    ):
        self._lock = threading.Lock()
        self._stdout = bytearray() if stdout else None
        self._stderr = bytearray() if stderr else None
        self._extended: dict[int, bytearray] | None = {} if extended else None
        self._limit = limit
        self._overflowed: set[int] = set()

    def _append(self, buffer: bytearray, datatype: int, data: bytes) -> None:
        if self._limit is not None:
            room = self._limit - len(buffer)
            if room < len(data):
                if datatype not in self._overflowed:
                    self._overflowed.add(datatype)
                    logger.warning(
                        'output stream %d exceeded %d bytes, dropping the rest',
                        datatype, self._limit
                    )
                data = data[:max(room, 0)]
        buffer += data

    def feed(self, data: bytes, datatype: int | None = None) -> None:
        '''store `data` received on stream `datatype` (`None` is stdout)'''
        with self._lock:
            if not datatype:
                if self._stdout is not None:
                    self._append(self._stdout, 0, data)
            elif datatype == EXTENDED_DATA_STDERR:
                if self._stderr is not None:
                    self._append(self._stderr, datatype, data)
            elif self._extended is not None:
                buffer = self._extended.setdefault(datatype, bytearray())
                self._append(buffer, datatype, data)

    def snapshot(self) -> PartialProcessOutput:
        '''copy of everything captured so far'''
        with self._lock:
            return PartialProcessOutput(
                stdout=None if self._stdout is None else bytes(self._stdout),
                stderr=None if self._stderr is None else bytes(self._stderr),
                stdout_extended={
                    k: bytes(v) for k, v in (self._extended or {}).items()
                },
            )

    def output(self, status_code: int | None) -> ProcessOutput:
        '''final output combined with the exit status'''
        partial = self.snapshot()
        return ProcessOutput(
            partial.stdout, partial.stderr, partial.stdout_extended,
            status_code
        )


class Process(Protocol):
    '''handle to a running process

    backends implement the primitive operations, the composites
    `kill`, `kill_with_output`, `get_partial_stdout` and
    `get_partial_stderr` are shared
    '''

    @property
    def state(self) -> ProcessState: ...

    def id(self) -> int | None:
        '''process id if the backend can observe it'''
        ...

    async def write_to_stdin(self, data: bytes) -> int: ...

    async def close_stdin(self) -> None: ...

    def get_partial_output(self) -> PartialProcessOutput: ...

    async def await_exit(self) -> int | None: ...

    async def await_exit_with_output(self) -> ProcessOutput: ...

    async def begin_kill(self) -> None: ...

    async def kill(self) -> int | None:
        await self.begin_kill()
        return await self.await_exit()

    async def kill_with_output(self) -> ProcessOutput:
        await self.begin_kill()
        return await self.await_exit_with_output()

    def get_partial_stdout(self) -> bytes:
        '''stdout captured so far, requires `redirect_stdout`'''
        if (stdout := self.get_partial_output().stdout) is None:
            raise StdoutNotPiped('stdout was not redirected')
        return stdout

    def get_partial_stderr(self) -> bytes:
        '''stderr captured so far, requires `redirect_stderr`'''
        if (stderr := self.get_partial_output().stderr) is None:
            raise StderrNotPiped('stderr was not redirected')
        return stderr


class Executor(Protocol):
    '''starts processes on a host'''

    async def begin_execute(self, config: ProcessConfiguration) -> Process: ...

    async def execute(self, config: ProcessConfiguration) -> ProcessOutput:
        '''start a process, wait for it, return all of its output'''
        process = await self.begin_execute(config)
        return await process.await_exit_with_output()
