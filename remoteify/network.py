'''Network contract and the stream plumbing shared by forwarding backends'''

import asyncio
import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Network(Protocol):
    '''limited networking on the host

    - `is_remote_network` is constant for a backend
    - `reverse_forward_tcp` makes the host listen on `host:port` and tunnel
      accepted connections back to this side, returning the bound port
      (useful when `port` is 0), failures raise `OSError`
    '''

    def is_remote_network(self) -> bool: ...

    async def reverse_forward_tcp(
        self,
        host: str,
        port: int,
        *,
        dest_host: str = 'localhost',
        dest_port: int | None = None
    ) -> int: ...


async def pump(reader, writer, chunk_size: int = 65536) -> None:
    '''copy `reader` to `writer` until EOF, then half-close `writer`'''
    try:
        while data := await reader.read(chunk_size):
            writer.write(data)
            await writer.drain()
    finally:
        if writer.can_write_eof():
            writer.write_eof()


async def tunnel(reader, writer, dest_host: str, dest_port: int) -> None:
    '''join an accepted connection to a new connection to `dest_host:dest_port`'''
    try:
        dest_reader, dest_writer = await asyncio.open_connection(
            dest_host, dest_port
        )
    except OSError as e:
        logger.warning('forward to %s:%d failed: %s', dest_host, dest_port, e)
        writer.close()
        return
    try:
        await asyncio.gather(
            pump(reader, dest_writer), pump(dest_reader, writer)
        )
    finally:
        dest_writer.close()
        writer.close()
