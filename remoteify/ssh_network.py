'''Reverse TCP forwarding through the SSH session'''

import errno
import logging

import asyncssh

from .network import Network, tunnel
from .ssh_session import SSHSession

logger = logging.getLogger(__name__)


class SSHNetwork(Network):
    '''network of the SSH peer'''

    def __init__(self, session: SSHSession):
        self.session = session

    def is_remote_network(self) -> bool:
        return True

    async def reverse_forward_tcp(
        self,
        host: str,
        port: int,
        *,
        dest_host: str = 'localhost',
        dest_port: int | None = None
    ) -> int:
        '''make the peer listen on `host:port`, tunnel connections back

        - accepted connections are joined to `dest_host:dest_port` here,
          `dest_port` defaults to the port the peer bound
        - returns the port the peer bound
        '''
        bound: list[int] = []

        def handler_factory(orig_host: str, orig_port: int):
            logger.debug('forwarded connection from %s:%d', orig_host, orig_port)
            target_port = bound[0] if dest_port is None else dest_port

            async def handle(reader, writer) -> None:
                await tunnel(reader, writer, dest_host, target_port)
            return handle

        try:
            listener = await self.session.start_reverse_forward(
                handler_factory, host, port
            )
        except asyncssh.ChannelListenError as e:
            # not an `asyncssh.Error`, the message is the only detail
            raise OSError(errno.EADDRNOTAVAIL, str(e), f'{host}:{port}') from e
        except asyncssh.Error as e:
            raise OSError(errno.EIO, e.reason, f'{host}:{port}') from e
        bound.append(listener.get_port())
        return bound[0]
