'''Linux host operations on an SSH peer

`SSHLinux` implements the `Filesystem`, `Executor` and `Network` contracts
on one authenticated SSH session:

```python
options = ConnectionOptions('example.org', 'root', Password('secret'))
async with await SSHLinux.connect(options) as linux:
    await linux.create_dir_recursively('/tmp/a/b')
    output = await linux.execute(
        ProcessConfiguration('ls', ['/tmp/a'], redirect_stdout=True)
    )
```
'''

from .config import ConnectionOptions
from .ssh_filesystem import SSHFilesystem
from .ssh_network import SSHNetwork
from .ssh_process import SSHExecutor
from .ssh_session import HostKeyHandler, SSHSession


class SSHLinux(SSHFilesystem, SSHExecutor, SSHNetwork):
    '''filesystem, processes and network of a host reached over SSH

    - filesystem operations use the session's SFTP client
    - processes and filesystem helpers use their own exec channels
    - closing the object closes every channel of the session
    '''

    def __init__(self, session: SSHSession):
        self.session = session

    @classmethod
    async def connect(
        cls,
        options: ConnectionOptions,
        host_key_handler: HostKeyHandler | None = None
    ) -> 'SSHLinux':
        '''connect and authenticate, see `SSHSession.connect`'''
        return cls(await SSHSession.connect(options, host_key_handler))

    @property
    def host(self) -> str:
        return self.session.host

    def close(self) -> None:
        self.session.close()

    # alias for shell terminology
    exit = close

    async def wait_closed(self) -> None:
        await self.session.wait_closed()

    async def __aenter__(self) -> 'SSHLinux':
        return self

    async def __aexit__(self, exc_type=None, exc_value=None, traceback=None):
        self.close()
        await self.wait_closed()

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.session.options.target!r})'
