'''Authenticated SSH session shared by the SSH backends

The session owns the `asyncssh` connection and the SFTP client opened on
it. Raw SSH requests (channel opens, global requests) are serialized by
`SSHSession.lock`; SFTP requests are pipelined by the SFTP client and do
not take the lock.
'''

import asyncio
from collections.abc import Callable
import logging

import asyncssh

from .config import ConnectionOptions, Password, PublicKey
from .errors import AuthFailed, ConnectFailed, SubsystemFailed

logger = logging.getLogger(__name__)

HostKeyHandler = Callable[[str, int, asyncssh.SSHKey], bool]
'''`handler(host, port, key)` returning whether the server key is trusted'''


def accept_any_host_key(host: str, port: int, key: asyncssh.SSHKey) -> bool:
    '''host key handler trusting every server, only for tests and labs'''
    return True


class _HostKeyClient(asyncssh.SSHClient):
    '''routes server host key validation to a `HostKeyHandler`'''

    def __init__(self, handler: HostKeyHandler):
        self._handler = handler

    def validate_host_public_key(
        self, host: str, addr: str, port: int, key: asyncssh.SSHKey
    ) -> bool:
        return bool(self._handler(host, port, key))


def _auth_kwargs(options: ConnectionOptions) -> dict[str, object]:
    '''`asyncssh.connect` arguments offering exactly one auth method'''
    auth = options.authentication
    if isinstance(auth, Password):
        return dict(
            password=auth.password, client_keys=None, agent_path=None,
            preferred_auth='password'
        )
    if isinstance(auth, PublicKey):
        return dict(
            password=None, client_keys=[auth.load()], agent_path=None,
            preferred_auth='publickey'
        )
    raise TypeError(f'unsupported authentication: {type(auth).__name__}')


class SSHSession:
    '''SSH connection with its SFTP subsystem

    `SSHSession.connect(options)`
    - `host_key_handler` decides which server keys to trust, by default
      the known hosts configured in `options.client_config` are used
    '''

    def __init__(
        self,
        connection: asyncssh.SSHClientConnection,
        sftp: asyncssh.SFTPClient,
        options: ConnectionOptions
    ):
        self.connection = connection
        '''underlying `asyncssh` connection, use under `lock`'''

        self.sftp = sftp
        '''SFTP client opened once at connect'''

        self.lock = asyncio.Lock()
        '''serializes raw SSH requests, FIFO'''

        self.options = options
        self._listeners: list[asyncssh.SSHListener] = []
        self._closed = False

    @property
    def host(self) -> str:
        return self.options.host

    @property
    def port(self) -> int:
        return self.options.port

    @property
    def username(self) -> str:
        return self.options.username

    @classmethod
    async def connect(
        cls,
        options: ConnectionOptions,
        host_key_handler: HostKeyHandler | None = None
    ) -> 'SSHSession':
        '''connect, verify the host key, authenticate, start SFTP

        - raises `ConnectFailed`, `AuthFailed` or `SubsystemFailed`
        - an unreadable or undecryptable private key is an `AuthFailed`
        '''
        kwargs = dict(options.extra)
        try:
            kwargs.update(_auth_kwargs(options))
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError, OSError) as e:
            raise AuthFailed(
                f'cannot load credentials for {options.target}: {e}'
            ) from e
        if host_key_handler is not None:
            kwargs['client_factory'] = lambda: _HostKeyClient(host_key_handler)
            # no pre-trusted keys, every server key goes to the handler
            kwargs['known_hosts'] = ([], [], [])
        logger.debug('connecting to %s', options.target)
        try:
            connection = await asyncssh.connect(
                options.host, options.port,
                username=options.username,
                options=options.client_config,
                **kwargs
            )
        except asyncssh.PermissionDenied as e:
            raise AuthFailed(
                f'authentication failed for {options.target}: {e.reason}'
            ) from e
        except (OSError, asyncssh.Error) as e:
            raise ConnectFailed(f'cannot connect to {options.target}: {e}') from e
        logger.debug('authenticated to %s', options.target)
        try:
            sftp = await connection.start_sftp_client()
        except (OSError, asyncssh.Error) as e:
            connection.close()
            raise SubsystemFailed(
                f'cannot start SFTP on {options.target}: {e}'
            ) from e
        logger.debug('SFTP subsystem started on %s', options.target)
        return cls(connection, sftp, options)

    async def open_exec(
        self,
        session_factory: Callable[[], asyncssh.SSHClientSession],
        command: str,
        env: dict[str, str] | None = None
    ) -> tuple[asyncssh.SSHClientChannel, asyncssh.SSHClientSession]:
        '''open a session channel running `command`, binary data'''
        async with self.lock:
            logger.debug('exec on %s: %s', self.options.target, command)
            return await self.connection.create_session(
                session_factory, command, env=env or {}, encoding=None
            )

    async def start_reverse_forward(
        self,
        handler_factory: Callable,
        host: str,
        port: int
    ) -> asyncssh.SSHListener:
        '''send a `tcpip-forward` request, keep the listener until close'''
        async with self.lock:
            listener = await self.connection.start_server(
                handler_factory, host, port
            )
        self._listeners.append(listener)
        logger.debug(
            'remote listener on %s:%d (requested %d)',
            host, listener.get_port(), port
        )
        return listener

    def close(self) -> None:
        '''close forwards, SFTP and the connection, does not wait'''
        if self._closed:
            return
        self._closed = True
        for listener in self._listeners:
            listener.close()
        self._listeners.clear()
        self.sftp.exit()
        self.connection.close()

    async def wait_closed(self) -> None:
        await self.connection.wait_closed()

    async def __aenter__(self) -> 'SSHSession':
        return self

    async def __aexit__(self, exc_type=None, exc_value=None, traceback=None):
        self.close()
        await self.wait_closed()
