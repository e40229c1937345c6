'''Linux host operations on the local machine

`LocalLinux` implements the same contracts as `remoteify.ssh.SSHLinux` by
passing straight through to `os`, `shutil` and `asyncio` subprocesses, so
code written against the contracts runs unchanged on either.
'''

import asyncio
import errno
import logging
import os
from pathlib import PurePosixPath
import shutil
import subprocess

from .errors import (
    ProcessIOError, ProcessIdNotFound, StdinNotPiped, StreamPipedButNotFound,
    wrap_process_error
)
from .executor import (
    DEFAULT_MAX_OUTPUT, EXTENDED_DATA_STDERR, Executor, OutputBuffers,
    PartialProcessOutput, Process, ProcessConfiguration, ProcessOutput,
    ProcessState
)
from .filesystem import (
    DirEntry, FileMetadata, FileType, Filesystem, OpenOptions, PathLike,
    Permissions
)
from .network import Network, tunnel

logger = logging.getLogger(__name__)

_CHUNK = 65536


class LocalFileStream:
    '''`FileStream` over a local file descriptor'''

    def __init__(self, fd: int, path: str):
        self._fd: int | None = fd
        self._path = path

    def _require_fd(self) -> int:
        if self._fd is None:
            raise ValueError('I/O operation on closed file')
        return self._fd

    async def read(self, size: int = -1) -> bytes:
        fd = self._require_fd()
        if size >= 0:
            return await asyncio.to_thread(os.read, fd, size)
        chunks = []
        while chunk := await asyncio.to_thread(os.read, fd, _CHUNK):
            chunks.append(chunk)
        return b''.join(chunks)

    async def write(self, data: bytes) -> int:
        fd = self._require_fd()
        view = memoryview(bytes(data))
        while view:
            view = view[await asyncio.to_thread(os.write, fd, view):]
        return len(data)

    async def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return os.lseek(self._require_fd(), offset, whence)

    async def tell(self) -> int:
        return os.lseek(self._require_fd(), 0, os.SEEK_CUR)

    async def close(self) -> None:
        if self._fd is not None:
            fd, self._fd = self._fd, None
            os.close(fd)

    async def __aenter__(self) -> 'LocalFileStream':
        return self

    async def __aexit__(self, exc_type=None, exc_value=None, traceback=None):
        await self.close()

    def __del__(self):
        if self._fd is not None:
            os.close(self._fd)


class LocalProcess(Process):
    '''handle to a local child process'''

    def __init__(
        self,
        config: ProcessConfiguration,
        proc: asyncio.subprocess.Process,
        buffers: OutputBuffers
    ):
        self._config = config
        self._proc = proc
        self._buffers = buffers
        self._state = ProcessState.RUNNING
        self._readers: list[asyncio.Task] = []
        for stream, datatype, wanted in (
            (proc.stdout, None, config.redirect_stdout),
            (proc.stderr, EXTENDED_DATA_STDERR, config.redirect_stderr),
        ):
            if not wanted:
                continue
            if stream is None:
                raise StreamPipedButNotFound('redirected stream has no pipe')
            self._readers.append(
                asyncio.create_task(self._read(stream, datatype))
            )

    async def _read(
        self, stream: asyncio.StreamReader, datatype: int | None
    ) -> None:
        while data := await stream.read(_CHUNK):
            self._buffers.feed(data, datatype)

    @property
    def state(self) -> ProcessState:
        return self._state

    def id(self) -> int | None:
        return self._proc.pid

    async def write_to_stdin(self, data: bytes) -> int:
        stdin = self._proc.stdin
        if (
            not self._config.redirect_stdin or stdin is None
            or stdin.is_closing() or self._state is ProcessState.EXITED
        ):
            raise StdinNotPiped('stdin is not piped or already closed')
        try:
            stdin.write(data)
            await stdin.drain()
        except OSError as e:
            raise ProcessIOError(e) from e
        return len(data)

    async def close_stdin(self) -> None:
        if not self._config.redirect_stdin:
            raise StdinNotPiped('stdin was not redirected')
        if (stdin := self._proc.stdin) is None:
            raise StreamPipedButNotFound('stdin has no pipe')
        if not stdin.is_closing():
            stdin.close()
            try:
                await stdin.wait_closed()
            except OSError as e:
                raise ProcessIOError(e) from e

    def get_partial_output(self) -> PartialProcessOutput:
        return self._buffers.snapshot()

    async def await_exit(self) -> int | None:
        if self._state is not ProcessState.EXITED:
            status = await self._proc.wait()
            await asyncio.gather(*self._readers)
            self._state = ProcessState.EXITED
            logger.debug('process %d exited with %d', self._proc.pid, status)
        return self._proc.returncode

    async def await_exit_with_output(self) -> ProcessOutput:
        status = await self.await_exit()
        return self._buffers.output(status)

    async def begin_kill(self) -> None:
        if self._state is not ProcessState.RUNNING:
            return
        try:
            self._proc.terminate()
        except ProcessLookupError as e:
            raise ProcessIdNotFound(f'no process {self._proc.pid}') from e
        self._state = ProcessState.SIGNALLED

    async def __aenter__(self) -> 'LocalProcess':
        return self

    async def __aexit__(self, exc_type=None, exc_value=None, traceback=None):
        if self._proc.stdin is not None and not self._proc.stdin.is_closing():
            self._proc.stdin.close()


class LocalLinux(Filesystem, Executor, Network):
    '''filesystem, processes and network of this machine'''

    def __init__(self, max_output: int | None = DEFAULT_MAX_OUTPUT):
        self.max_output = max_output
        self._servers: list[asyncio.Server] = []

    # filesystem

    async def exists(self, path: PathLike) -> bool:
        return await asyncio.to_thread(os.path.exists, path)

    async def create_file(self, path: PathLike) -> None:
        flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
        fd = await asyncio.to_thread(os.open, path, flags, 0o666)
        os.close(fd)

    async def open_file(
        self, path: PathLike, options: OpenOptions
    ) -> LocalFileStream:
        fd = await asyncio.to_thread(os.open, path, options.os_flags(), 0o666)
        return LocalFileStream(fd, str(path))

    async def rename_file(self, old_path: PathLike, new_path: PathLike) -> None:
        await asyncio.to_thread(os.rename, old_path, new_path)

    async def copy_file(self, old_path: PathLike, new_path: PathLike) -> int:
        await asyncio.to_thread(shutil.copyfile, old_path, new_path)
        return os.stat(new_path).st_size

    async def canonicalize(self, path: PathLike) -> PurePosixPath:
        real = await asyncio.to_thread(os.path.realpath, path, strict=True)
        return PurePosixPath(real)

    async def create_symlink(
        self, source_path: PathLike, destination_path: PathLike
    ) -> None:
        await asyncio.to_thread(os.symlink, source_path, destination_path)

    async def create_hard_link(
        self, source_path: PathLike, destination_path: PathLike
    ) -> None:
        await asyncio.to_thread(os.link, source_path, destination_path)

    async def read_link(self, link_path: PathLike) -> PurePosixPath:
        return PurePosixPath(await asyncio.to_thread(os.readlink, link_path))

    async def set_permissions(
        self, path: PathLike, permissions: Permissions
    ) -> None:
        await asyncio.to_thread(os.chmod, path, permissions.mode)

    async def remove_file(self, path: PathLike) -> None:
        await asyncio.to_thread(os.remove, path)

    async def remove_dir(self, path: PathLike) -> None:
        await asyncio.to_thread(os.rmdir, path)

    async def remove_dir_recursively(self, path: PathLike) -> None:
        # same outcome as `rm -rf`, a missing path is not an error
        if await asyncio.to_thread(os.path.lexists, path):
            await asyncio.to_thread(shutil.rmtree, path)

    async def create_dir(self, path: PathLike) -> None:
        await asyncio.to_thread(os.mkdir, path)

    async def create_dir_recursively(self, path: PathLike) -> None:
        await asyncio.to_thread(os.makedirs, path, exist_ok=True)

    async def list_dir(self, path: PathLike) -> list[DirEntry]:
        return await asyncio.to_thread(self._list_dir, PurePosixPath(path))

    @staticmethod
    def _list_dir(parent: PurePosixPath) -> list[DirEntry]:
        entries = []
        with os.scandir(parent) as it:
            for entry in it:
                if entry.is_symlink():
                    file_type = FileType.SYMLINK
                elif entry.is_dir(follow_symlinks=False):
                    file_type = FileType.DIR
                elif entry.is_file(follow_symlinks=False):
                    file_type = FileType.FILE
                else:
                    file_type = FileType.OTHER
                entries.append(DirEntry(parent / entry.name, file_type, entry.name))
        return entries

    async def get_metadata(self, path: PathLike) -> FileMetadata:
        return FileMetadata.from_stat_result(await asyncio.to_thread(os.stat, path))

    async def get_symlink_metadata(self, path: PathLike) -> FileMetadata:
        return FileMetadata.from_stat_result(await asyncio.to_thread(os.lstat, path))

    # processes

    async def begin_execute(self, config: ProcessConfiguration) -> LocalProcess:
        env = {**os.environ, **config.envs} if config.envs else None
        pipe = lambda wanted: subprocess.PIPE if wanted else subprocess.DEVNULL
        try:
            proc = await asyncio.create_subprocess_exec(
                config.program, *config.args,
                stdin=pipe(config.redirect_stdin),
                stdout=pipe(config.redirect_stdout),
                stderr=pipe(config.redirect_stderr),
                cwd=config.working_dir,
                env=env,
                user=config.user_id,
                group=config.group_id,
                process_group=config.process_group_id,
            )
        except (OSError, ValueError) as e:
            raise wrap_process_error(e) from e
        buffers = OutputBuffers(
            config.redirect_stdout, config.redirect_stderr, False,
            self.max_output
        )
        return LocalProcess(config, proc, buffers)

    # network

    def is_remote_network(self) -> bool:
        return False

    async def reverse_forward_tcp(
        self,
        host: str,
        port: int,
        *,
        dest_host: str = 'localhost',
        dest_port: int | None = None
    ) -> int:
        '''listen on `host:port` and forward to `dest_host:dest_port`

        - without `dest_port` this side is already reachable at `port`, so
          nothing is forwarded and `port` is returned
        '''
        if dest_port is None:
            if not port:
                raise OSError(errno.EINVAL, 'no port to forward', f'{host}:0')
            return port

        async def handle(reader, writer) -> None:
            await tunnel(reader, writer, dest_host, dest_port)

        server = await asyncio.start_server(handle, host, port)
        self._servers.append(server)
        return server.sockets[0].getsockname()[1]

    def close(self) -> None:
        for server in self._servers:
            server.close()
        self._servers.clear()

    async def __aenter__(self) -> 'LocalLinux':
        return self

    async def __aexit__(self, exc_type=None, exc_value=None, traceback=None):
        self.close()
