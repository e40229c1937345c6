import asyncio
import errno

import asyncssh
import pytest


async def echo_server():
    async def echo(reader, writer):
        while data := await reader.read(1024):
            writer.write(data.upper())
            await writer.drain()
        writer.close()
    server = await asyncio.start_server(echo, '127.0.0.1', 0)
    return server, server.sockets[0].getsockname()[1]


async def roundtrip(handle, payload: bytes) -> bytes:
    '''drive a forwarded-connection handler through a local socket pair'''
    entry = await asyncio.start_server(handle, '127.0.0.1', 0)
    port = entry.sockets[0].getsockname()[1]
    try:
        reader, writer = await asyncio.open_connection('127.0.0.1', port)
        writer.write(payload)
        writer.write_eof()
        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()
        return data
    finally:
        entry.close()


@pytest.mark.asyncio
async def test_is_remote(linux):
    assert linux.is_remote_network()


@pytest.mark.asyncio
async def test_reverse_forward_bound_port(linux, connection):
    assert await linux.reverse_forward_tcp('0.0.0.0', 0) == 40022
    assert await linux.reverse_forward_tcp('localhost', 8080) == 8080
    assert [f[:2] for f in connection.forwards] == [('0.0.0.0', 0), ('localhost', 8080)]


@pytest.mark.asyncio
async def test_reverse_forward_tunnels(linux, connection):
    server, port = await echo_server()
    try:
        await linux.reverse_forward_tcp(
            'localhost', 9000, dest_host='127.0.0.1', dest_port=port
        )
        [(_, _, handler_factory)] = connection.forwards
        handle = handler_factory('203.0.113.7', 51000)
        assert await roundtrip(handle, b'ping') == b'PING'
    finally:
        server.close()


@pytest.mark.asyncio
async def test_reverse_forward_defaults_to_bound_port(linux, connection):
    server, port = await echo_server()
    try:
        assert await linux.reverse_forward_tcp(
            '127.0.0.1', port, dest_host='127.0.0.1'
        ) == port
        [(_, _, handler_factory)] = connection.forwards
        assert await roundtrip(handler_factory('203.0.113.7', 1), b'x') == b'X'
    finally:
        server.close()


@pytest.mark.asyncio
async def test_reverse_forward_unreachable_destination(linux, connection):
    server, port = await echo_server()
    server.close()
    await server.wait_closed()
    await linux.reverse_forward_tcp('localhost', 9000, dest_host='127.0.0.1', dest_port=port)
    [(_, _, handler_factory)] = connection.forwards
    assert await roundtrip(handler_factory('203.0.113.7', 1), b'x') == b''


@pytest.mark.asyncio
@pytest.mark.parametrize('error, code', [
    (asyncssh.ChannelListenError('Port forwarding not permitted'), errno.EADDRNOTAVAIL),
    (asyncssh.ConnectionLost('Connection lost'), errno.EIO),
])
async def test_reverse_forward_refused(linux, connection, error, code):
    async def refuse(handler_factory, host, port):
        raise error
    connection.start_server = refuse
    with pytest.raises(OSError) as info:
        await linux.reverse_forward_tcp('localhost', 80)
    assert info.value.errno == code
    assert info.value.filename == 'localhost:80'
