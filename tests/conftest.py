'''Stand-ins for the asyncssh connection, channel and SFTP client

The fakes run exec commands with the local `/bin/sh` and serve SFTP
requests from the local filesystem, so the SSH backends can be tested
end to end without an SSH server.
'''

import asyncio
import errno
import os
import signal
import stat
import uuid

import asyncssh
import pytest

from remoteify.config import ConnectionOptions, Password
from remoteify.ssh import SSHLinux
from remoteify.ssh_session import SSHSession

_ERRNO_SFTP = {
    errno.ENOENT: 2,  # FX_NO_SUCH_FILE
    errno.EACCES: 3,  # FX_PERMISSION_DENIED
    errno.EPERM: 3,
}


def sftp_error(e: OSError) -> asyncssh.SFTPError:
    return asyncssh.SFTPError(_ERRNO_SFTP.get(e.errno, 4), e.strerror or 'failure')


def attrs_from_stat(st: os.stat_result) -> asyncssh.SFTPAttrs:
    return asyncssh.SFTPAttrs(
        size=st.st_size, uid=st.st_uid, gid=st.st_gid,
        permissions=st.st_mode, atime=int(st.st_atime), mtime=int(st.st_mtime)
    )


class FakeSFTPFile:

    def __init__(self, fd: int, appending: bool):
        self.fd = fd
        self.appending = appending
        self.offset = 0

    async def read(self, size: int = -1) -> bytes:
        os.lseek(self.fd, self.offset, os.SEEK_SET)
        if size < 0:
            size = max(os.fstat(self.fd).st_size - self.offset, 0)
        data = os.read(self.fd, size)
        self.offset += len(data)
        return data

    async def write(self, data: bytes) -> int:
        if not self.appending:
            os.lseek(self.fd, self.offset, os.SEEK_SET)
        os.write(self.fd, data)
        self.offset += len(data)
        return len(data)

    async def seek(self, offset: int, from_what: int = os.SEEK_SET) -> int:
        if from_what == os.SEEK_SET:
            self.offset = offset
        elif from_what == os.SEEK_CUR:
            self.offset += offset
        else:
            self.offset = os.fstat(self.fd).st_size + offset
        return self.offset

    async def tell(self) -> int:
        return self.offset

    async def close(self) -> None:
        os.close(self.fd)


class FakeSFTP:
    '''SFTP v3 client answering from the local filesystem'''

    def __init__(self):
        self.exited = False
        self.setstat_calls = []

    async def stat(self, path):
        try:
            return attrs_from_stat(os.stat(path))
        except OSError as e:
            raise sftp_error(e) from None

    async def lstat(self, path):
        try:
            return attrs_from_stat(os.lstat(path))
        except OSError as e:
            raise sftp_error(e) from None

    async def open(self, path, pflags, encoding='utf-8'):
        assert encoding is None
        read, write = pflags & 1, pflags & 2
        flags = os.O_RDWR if read and write else os.O_WRONLY if write else os.O_RDONLY
        for bit, flag in ((4, os.O_APPEND), (8, os.O_CREAT), (16, os.O_TRUNC), (32, os.O_EXCL)):
            if pflags & bit:
                flags |= flag
        try:
            fd = os.open(path, flags, 0o644)
        except OSError as e:
            raise sftp_error(e) from None
        return FakeSFTPFile(fd, bool(pflags & 4))

    async def rename(self, oldpath, newpath):
        if os.path.lexists(newpath):
            raise asyncssh.SFTPError(4, 'Failure')
        try:
            os.rename(oldpath, newpath)
        except OSError as e:
            raise sftp_error(e) from None

    async def realpath(self, path):
        try:
            return os.path.realpath(path, strict=True)
        except OSError as e:
            raise sftp_error(e) from None

    async def symlink(self, oldpath, newpath):
        try:
            os.symlink(oldpath, newpath)
        except OSError as e:
            raise sftp_error(e) from None

    async def readlink(self, path):
        try:
            return os.readlink(path)
        except OSError as e:
            raise sftp_error(e) from None

    async def setstat(self, path, attrs):
        self.setstat_calls.append((path, attrs.permissions))
        try:
            os.chmod(path, attrs.permissions)
        except OSError as e:
            raise sftp_error(e) from None

    async def remove(self, path):
        try:
            os.remove(path)
        except OSError as e:
            raise sftp_error(e) from None

    async def rmdir(self, path):
        try:
            os.rmdir(path)
        except OSError as e:
            raise sftp_error(e) from None

    async def mkdir(self, path):
        try:
            os.mkdir(path)
        except OSError as e:
            raise sftp_error(e) from None

    async def readdir(self, path):
        try:
            names = ['.', '..', *os.listdir(path)]
        except OSError as e:
            raise sftp_error(e) from None
        result = []
        for name in names:
            st = os.lstat(os.path.join(path, name))
            longname = stat.filemode(st.st_mode) + f' 1 root root {st.st_size} {name}'
            result.append(asyncssh.SFTPName(
                filename=name, longname=longname, attrs=attrs_from_stat(st)
            ))
        return result

    def exit(self):
        self.exited = True


class FakeChannel:
    '''exec channel backed by a local `sh -c` child process'''

    def __init__(self):
        self.proc: asyncio.subprocess.Process | None = None
        self.exit_status = None
        self.exit_signal = None
        self.signals = []
        self.eof_sent = False
        self.closed = False
        self.signal_error: Exception | None = None
        self.ignore_signals = False

    def get_exit_status(self):
        return self.exit_status

    def get_exit_signal(self):
        return self.exit_signal

    def write(self, data: bytes) -> None:
        if self.closed or self.eof_sent:
            raise BrokenPipeError(errno.EPIPE, 'Channel not open for sending')
        self.proc.stdin.write(data)

    def write_eof(self) -> None:
        self.eof_sent = True
        if self.proc and not self.proc.stdin.is_closing():
            self.proc.stdin.close()

    def send_signal(self, name: str) -> None:
        if self.signal_error is not None:
            raise self.signal_error
        self.signals.append(name)
        if self.proc and self.proc.returncode is None and not self.ignore_signals:
            self.proc.send_signal(getattr(signal, f'SIG{name}'))

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            if self.proc and self.proc.returncode is None:
                self.proc.kill()


class FakeListener:

    def __init__(self, port: int):
        self.port = port
        self.closed = False

    def get_port(self) -> int:
        return self.port

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    '''SSH connection running exec requests on this machine'''

    def __init__(self):
        self.commands = []
        self.envs = []
        self.forwards = []
        self.active_requests = 0
        self.max_active_requests = 0
        self.closed = False
        self.channels: list[FakeChannel] = []
        self.tasks = set()

    async def create_session(self, session_factory, command, env=(), encoding='utf-8'):
        assert encoding is None
        self.active_requests += 1
        self.max_active_requests = max(self.max_active_requests, self.active_requests)
        try:
            await asyncio.sleep(0)
            self.commands.append(command)
            self.envs.append(dict(env))
            channel = FakeChannel()
            session = session_factory()
            session.connection_made(channel)
            channel.proc = await asyncio.create_subprocess_exec(
                '/bin/sh', '-c', command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **dict(env)}
            )
            self.channels.append(channel)
            task = asyncio.create_task(self._run(channel, session))
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)
            return channel, session
        finally:
            self.active_requests -= 1

    async def _run(self, channel: FakeChannel, session) -> None:
        async def pump(stream, datatype):
            while data := await stream.read(4096):
                session.data_received(data, datatype)
        await asyncio.gather(
            pump(channel.proc.stdout, None), pump(channel.proc.stderr, 1)
        )
        code = await channel.proc.wait()
        session.eof_received()
        if code < 0 and not channel.closed:
            channel.exit_signal = (signal.Signals(-code).name[3:], False, '', '')
            channel.exit_status = -1
        elif not channel.closed:
            channel.exit_status = code
        channel.closed = True
        session.connection_lost(None)

    async def start_server(self, handler_factory, host, port):
        await asyncio.sleep(0)
        listener = FakeListener(port or 40022)
        self.forwards.append((host, port, handler_factory))
        return listener

    async def start_sftp_client(self):
        return FakeSFTP()

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


@pytest.fixture
def options():
    return ConnectionOptions('fake.example', 'root', Password('root123'))


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def sftp():
    return FakeSFTP()


@pytest.fixture
def session(connection, sftp, options):
    return SSHSession(connection, sftp, options)


@pytest.fixture
def linux(session):
    return SSHLinux(session)


@pytest.fixture
def tmp_file(tmp_path):
    '''`tmp_file('content')` creates a uniquely named file'''
    def make(content: str = '') -> str:
        path = tmp_path / str(uuid.uuid4())
        path.write_text(content)
        return str(path)
    return make
