'''Processes run over SSH exec channels

Each process owns one exec channel. The `_ExecSession` callbacks are the
reader: the event loop feeds them channel data until the peer closes the
channel, and their completion future is what `await_exit` joins.
'''

import asyncio
import logging
import signal

import asyncssh

from .errors import (
    ProcessError, StdinNotPiped, UnsupportedOperation, wrap_process_error
)
from .executor import (
    EXTENDED_DATA_STDERR, Executor, OutputBuffers, PartialProcessOutput,
    Process, ProcessConfiguration, ProcessOutput, ProcessState
)
from .shell import build_command
from .ssh_session import SSHSession

logger = logging.getLogger(__name__)

KILL_GRACE = 5.0
'''seconds a killed process gets before its channel is closed'''


def exit_status(channel: asyncssh.SSHClientChannel) -> int | None:
    '''exit status reported on a closed channel

    - `exit-status` is returned as-is
    - `exit-signal` is returned as the negated signal number
    - `None` when the peer reported neither
    '''
    if exit_signal := channel.get_exit_signal():
        name = exit_signal[0]
        try:
            return -signal.Signals[f'SIG{name}'].value
        except KeyError:
            logger.warning('unknown exit signal %r', name)
            return None
    status = channel.get_exit_status()
    if status is None or status < 0:
        return None
    return status


class _ExecSession(asyncssh.SSHClientSession):
    '''collects channel data into `OutputBuffers` until the channel closes'''

    def __init__(self, buffers: OutputBuffers, disable_extra_reads: bool):
        self._buffers = buffers
        self._disable_extra_reads = disable_extra_reads
        self._writable = asyncio.Event()
        self._writable.set()
        self.closed: asyncio.Future[None] = (
            asyncio.get_running_loop().create_future()
        )

    def data_received(self, data: bytes, datatype: int | None) -> None:
        if (
            datatype and datatype != EXTENDED_DATA_STDERR
            and self._disable_extra_reads
        ):
            return
        self._buffers.feed(data, datatype)

    def eof_received(self) -> bool:
        # stay half open, exit status and close follow the peer's EOF
        return True

    def pause_writing(self) -> None:
        self._writable.clear()

    def resume_writing(self) -> None:
        self._writable.set()

    def connection_lost(self, exc: Exception | None) -> None:
        self._writable.set()
        if not self.closed.done():
            if exc is None:
                self.closed.set_result(None)
            else:
                self.closed.set_exception(exc)

    async def drain(self) -> None:
        await self._writable.wait()


class SSHProcess(Process):
    '''handle to a command running on an exec channel

    - `id()` is always `None`, SSH does not report remote pids
    - dropping the handle closes the channel but may leave the remote
      program running, use `kill` to stop it
    '''

    def __init__(
        self,
        config: ProcessConfiguration,
        channel: asyncssh.SSHClientChannel,
        session: _ExecSession,
        buffers: OutputBuffers
    ):
        self._config = config
        self._channel = channel
        self._session = session
        self._buffers = buffers
        self._state = ProcessState.RUNNING
        self._stdin_open = config.redirect_stdin
        self._status: int | None = None
        self._error: ProcessError | None = None

        self.kill_grace = KILL_GRACE
        '''seconds `kill` waits after TERM, and again after closing'''

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def channel(self) -> asyncssh.SSHClientChannel:
        return self._channel

    def id(self) -> int | None:
        return None

    async def write_to_stdin(self, data: bytes) -> int:
        if not self._stdin_open or self._state is ProcessState.EXITED:
            raise StdinNotPiped('stdin is not piped or already closed')
        try:
            self._channel.write(data)
            await self._session.drain()
        except (OSError, asyncssh.Error) as e:
            raise wrap_process_error(e) from e
        return len(data)

    async def close_stdin(self) -> None:
        if not self._config.redirect_stdin:
            raise StdinNotPiped('stdin was not redirected')
        if not self._stdin_open:
            return
        self._stdin_open = False
        if self._state is ProcessState.EXITED:
            return
        try:
            self._channel.write_eof()
        except (OSError, asyncssh.Error) as e:
            raise wrap_process_error(e) from e

    def get_partial_output(self) -> PartialProcessOutput:
        return self._buffers.snapshot()

    async def await_exit(self) -> int | None:
        if self._error is not None:
            raise self._error
        if self._state is not ProcessState.EXITED:
            try:
                await asyncio.shield(self._session.closed)
            except (OSError, asyncssh.Error) as e:
                self._state = ProcessState.EXITED
                self._stdin_open = False
                self._error = wrap_process_error(e)
                raise self._error from e
            self._status = exit_status(self._channel)
            self._state = ProcessState.EXITED
            self._stdin_open = False
            logger.debug('remote process exited with %r', self._status)
        return self._status

    async def await_exit_with_output(self) -> ProcessOutput:
        status = await self.await_exit()
        return self._buffers.output(status)

    async def begin_kill(self) -> None:
        if self._state is not ProcessState.RUNNING:
            return
        self._state = ProcessState.SIGNALLED
        try:
            self._channel.send_signal('TERM')
        except (OSError, asyncssh.Error) as e:
            logger.warning('cannot signal remote process (%s), closing', e)
            self._channel.close()

    async def _reap(self) -> None:
        '''wait for the channel to close after TERM, close it if it doesn't

        - `signal` requests get no reply, a peer may ignore them silently
        - a close the peer never confirms ends the process with no status
        '''
        closed = self._session.closed
        done, _ = await asyncio.wait([closed], timeout=self.kill_grace)
        if done:
            return
        logger.warning(
            'remote process ignored TERM for %gs, closing channel',
            self.kill_grace
        )
        self._channel.close()
        done, _ = await asyncio.wait([closed], timeout=self.kill_grace)
        if not done:
            logger.warning('channel close not confirmed, giving up on it')
            self._session.connection_lost(None)

    async def kill(self) -> int | None:
        await self.begin_kill()
        await self._reap()
        return await self.await_exit()

    async def kill_with_output(self) -> ProcessOutput:
        await self.begin_kill()
        await self._reap()
        return await self.await_exit_with_output()

    def close(self) -> None:
        '''close the channel without waiting, best effort'''
        if self._state is not ProcessState.EXITED:
            self._channel.close()

    async def __aenter__(self) -> 'SSHProcess':
        return self

    async def __aexit__(self, exc_type=None, exc_value=None, traceback=None):
        self.close()

    def __del__(self):
        try:
            self.close()
        except RuntimeError:
            # event loop already closed, the channel went with it
            pass


class SSHExecutor(Executor):
    '''starts processes on the SSH peer'''

    def __init__(self, session: SSHSession):
        self.session = session

    async def begin_execute(self, config: ProcessConfiguration) -> SSHProcess:
        ids = config.user_id, config.group_id, config.process_group_id
        if any(v is not None for v in ids):
            raise UnsupportedOperation(
                'user, group and process group ids need a local process'
            )
        options = self.session.options
        env = config.envs if options.env_requests else None
        try:
            command = build_command(
                config.argv, config.working_dir,
                None if options.env_requests else config.envs
            )
        except ValueError as e:
            raise UnsupportedOperation(str(e)) from e
        buffers = OutputBuffers(
            config.redirect_stdout, config.redirect_stderr,
            not config.disable_extra_reads, options.max_output
        )
        try:
            channel, session = await self.session.open_exec(
                lambda: _ExecSession(buffers, config.disable_extra_reads),
                command, env
            )
        except (OSError, asyncssh.Error) as e:
            raise wrap_process_error(e) from e
        if not config.redirect_stdin:
            channel.write_eof()
        return SSHProcess(config, channel, session, buffers)
