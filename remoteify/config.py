'''Connection settings for SSH backends

```python
options = ConnectionOptions.from_target(
    'root@example.org:2222', Password('secret')
)
linux = await SSHLinux.connect(options)
```
'''

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
import re
from typing import NamedTuple

import asyncssh

from .executor import DEFAULT_MAX_OUTPUT

_RE_TARGET = re.compile(r'''
    ^ (?: (?P<user> [^@]+ ) @ )?  # user@
    (?: \[ (?P<host6> [^\]]+ ) \] | (?P<host> [^:@\[\]]+ ) )  # host or [::1]
    (?: : (?P<port> \d+ ) )? $  # :port
''', re.X)
'''parses `user@host:port`, `user@[::1]:port` and shorter forms'''

ENV_PREFIX = 'REMOTEIFY_SSH_'
'''prefix of environment variables read by `ConnectionOptions.from_env`'''


class Password(NamedTuple):
    '''password authentication'''

    password: str


class PublicKey(NamedTuple):
    '''public key authentication

    - `private_key` is a key file path, key text, or `asyncssh.SSHKey`
    - `passphrase` decrypts an encrypted private key
    '''

    private_key: str | os.PathLike | bytes | asyncssh.SSHKey
    passphrase: str | None = None

    def load(self) -> asyncssh.SSHKey:
        '''the private key as an `asyncssh.SSHKey`'''
        key = self.private_key
        if isinstance(key, asyncssh.SSHKey):
            return key
        if isinstance(key, bytes) or (
            isinstance(key, str) and key.lstrip().startswith('-----BEGIN')
        ):
            return asyncssh.import_private_key(key, self.passphrase)
        return asyncssh.read_private_key(key, self.passphrase)


Authentication = Password | PublicKey
'''the one authentication method used for a connection'''


@dataclass
class ConnectionOptions:
    '''where and how to connect an SSH backend

    - `client_config` is handed to `asyncssh` untouched (kex algorithms,
      timeouts, known hosts, ...)
    - `env_requests` sends process environment as SSH `env` requests,
      only useful when the server's `AcceptEnv` allows the names,
      otherwise the variables are set by the remote command line
    - `max_output` bounds each captured process output stream
    '''

    host: str
    username: str
    authentication: Authentication
    port: int = 22
    client_config: asyncssh.SSHClientConnectionOptions | None = None
    env_requests: bool = False
    max_output: int | None = DEFAULT_MAX_OUTPUT
    extra: dict[str, object] = field(default_factory=dict)
    '''additional keyword arguments for `asyncssh.connect`'''

    def __post_init__(self):
        if not 0 < int(self.port) < 65536:
            raise ValueError(f'port out of range: {self.port}')
        self.port = int(self.port)

    def __repr__(self) -> str:
        # keep credentials out of logs and tracebacks
        auth = type(self.authentication).__name__
        return (
            f'{self.__class__.__name__}(host={self.host!r}, '
            f'port={self.port}, username={self.username!r}, '
            f'authentication={auth})'
        )

    @property
    def target(self) -> str:
        '''`user@host:port` form of the destination'''
        host = f'[{self.host}]' if ':' in self.host else self.host
        return f'{self.username}@{host}:{self.port}'

    @classmethod
    def from_target(
        cls,
        target: str,
        authentication: Authentication,
        **kwargs
    ) -> 'ConnectionOptions':
        '''options from `user@host:port`, user defaults to the local user'''
        if not (m := _RE_TARGET.match(target.strip())):
            raise ValueError(f'invalid SSH target: {target!r}')
        port = kwargs.pop('port', None) or int(m['port'] or 22)
        username = m['user'] or kwargs.pop('username', None) or _local_user()
        return cls(
            host=m['host6'] or m['host'],
            username=username,
            authentication=authentication,
            port=port,
            **kwargs
        )

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **kwargs
    ) -> 'ConnectionOptions':
        '''options from `REMOTEIFY_SSH_*` environment variables

        - `HOST` (required), `PORT`, `USER`
        - `PASSWORD` or `KEY` (a private key file) with `PASSPHRASE`
        '''
        environ = os.environ if environ is None else environ
        get = lambda name: environ.get(ENV_PREFIX + name) or None
        if not (host := get('HOST')):
            raise KeyError(f'{ENV_PREFIX}HOST is not set')
        if key := get('KEY'):
            authentication = PublicKey(key, get('PASSPHRASE'))
        elif (password := get('PASSWORD')) is not None:
            authentication = Password(password)
        else:
            raise KeyError(f'neither {ENV_PREFIX}PASSWORD nor {ENV_PREFIX}KEY is set')
        return cls(
            host=host,
            username=get('USER') or _local_user(),
            authentication=authentication,
            port=int(get('PORT') or 22),
            **kwargs
        )


def _local_user() -> str:
    try:
        return os.getlogin()
    except OSError:
        return os.environ.get('USER', 'root')
