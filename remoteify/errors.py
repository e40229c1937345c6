'''Error kinds raised by the remoteify backends

- filesystem and network operations raise `OSError` directly
- process operations raise a `ProcessError` subclass
- connection setup raises a `SessionError` subclass
'''

import errno
import os

import asyncssh

_SFTP_ERRNO: dict[int, int] = {
    2: errno.ENOENT,  # FX_NO_SUCH_FILE
    3: errno.EACCES,  # FX_PERMISSION_DENIED
    4: errno.EIO,  # FX_FAILURE
    5: errno.EBADMSG,  # FX_BAD_MESSAGE
    6: errno.ENOTCONN,  # FX_NO_CONNECTION
    7: errno.ECONNRESET,  # FX_CONNECTION_LOST
    8: errno.EOPNOTSUPP,  # FX_OP_UNSUPPORTED
    9: errno.EBADF,  # FX_INVALID_HANDLE
    10: errno.ENOENT,  # FX_NO_SUCH_PATH
    11: errno.EEXIST,  # FX_FILE_ALREADY_EXISTS
    12: errno.EROFS,  # FX_WRITE_PROTECT
    13: errno.ENODEV,  # FX_NO_MEDIA
    14: errno.ENOSPC,  # FX_NO_SPACE_ON_FILESYSTEM
    15: errno.EDQUOT,  # FX_QUOTA_EXCEEDED
    18: errno.ENOTEMPTY,  # FX_DIR_NOT_EMPTY
    19: errno.ENOTDIR,  # FX_NOT_A_DIRECTORY
    20: errno.EINVAL,  # FX_INVALID_FILENAME
    21: errno.ELOOP,  # FX_LINK_LOOP
    22: errno.EPERM,  # FX_CANNOT_DELETE
    23: errno.EINVAL,  # FX_INVALID_PARAMETER
    24: errno.EISDIR,  # FX_FILE_IS_A_DIRECTORY
}
'''SFTP status codes and the `errno` value closest to each'''

SFTP_NO_SUCH_FILE = 2
'''SFTP status code for a missing path'''


class ProcessError(Exception):
    '''base of the closed set of errors raised by process operations'''


class UnsupportedOperation(ProcessError):
    '''the backend cannot perform this operation'''


class ProcessIdNotFound(ProcessError):
    '''the backend cannot observe a pid for this process'''


class StdinNotPiped(ProcessError):
    '''stdin was not redirected, or has already been closed'''


class StdoutNotPiped(ProcessError):
    '''stdout was requested but not redirected'''


class StderrNotPiped(ProcessError):
    '''stderr was requested but not redirected'''


class StreamPipedButNotFound(ProcessError):
    '''a redirected stream has no underlying endpoint'''


class ProcessIOError(ProcessError):
    '''OS- or peer-reported I/O failure, the `OSError` is kept in `inner`'''

    def __init__(self, inner: OSError):
        super().__init__(str(inner))
        self.inner = inner


class ForeignError(ProcessError):
    '''error from a dependency that fits no other kind'''

    def __init__(self, inner: BaseException):
        super().__init__(f'{type(inner).__name__}: {inner}')
        self.inner = inner


class SessionError(Exception):
    '''base of the errors raised while establishing an SSH session'''


class ConnectFailed(SessionError):
    '''TCP connection or key exchange failed'''


class AuthFailed(SessionError):
    '''the server rejected the authentication method'''


class SubsystemFailed(SessionError):
    '''the SFTP subsystem could not be started'''


def sftp2oserror(
    exc: asyncssh.SFTPError, path: object = None, path2: object = None
) -> OSError:
    '''convert an SFTP status error to an `OSError` with a matching errno

    - the server's reason text is kept verbatim as `strerror`
    '''
    code = _SFTP_ERRNO.get(exc.code, errno.EIO)
    reason = exc.reason or os.strerror(code)
    if path is None:
        return OSError(code, reason)
    if path2 is None:
        return OSError(code, reason, str(path))
    return OSError(code, reason, str(path), None, str(path2))


def wrap_process_error(exc: BaseException) -> ProcessError:
    '''place a foreign exception into the process error taxonomy'''
    if isinstance(exc, ProcessError):
        return exc
    if isinstance(exc, OSError):
        return ProcessIOError(exc)
    if isinstance(exc, asyncssh.SFTPError):
        return ProcessIOError(sftp2oserror(exc))
    if isinstance(exc, asyncssh.ChannelOpenError):
        return ProcessIOError(OSError(errno.ECONNREFUSED, exc.reason))
    if isinstance(exc, asyncssh.DisconnectError):
        return ProcessIOError(OSError(errno.ECONNRESET, exc.reason))
    return ForeignError(exc)
