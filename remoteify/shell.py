'''Build POSIX shell command lines and read errors back from shell output

Exec channels hand their command to the remote login shell, so every
token is quoted exactly once here and nowhere else.
'''

from collections.abc import Iterable, Mapping
import errno
import os
import re

STDERR_LIMIT = 1024
'''max bytes of stderr kept in an error message'''

_NO_QUOTE_NEEDED = re.compile(r'[\w./@%+,:=-]+').fullmatch
'''whole str made of shell-legal unquoted token chars, newlines never pass'''

_IS_VALID_ENV_VAR_NAME = re.compile(r'[a-zA-Z_][a-zA-Z0-9_]*').fullmatch
'''highly restrictive test for a valid environment variable name'''

_ERRNO_STR = (
    (errno.EPERM, 'operation not permitted'),
    (errno.ENOENT, 'no such file'),  # omit ' or directory' suffix for dash
    (errno.EACCES, 'permission denied'),
    (errno.EEXIST, 'file exists'),
    (errno.ENOTDIR, 'not a directory'),
    (errno.EISDIR, 'is a directory'),
    (errno.ENOTEMPTY, 'directory not empty'),
    (errno.EXDEV, 'cross-device link'),
    (errno.ENOSPC, 'no space left'),
    (errno.EROFS, 'read-only file system'),
    (errno.EINVAL, 'invalid argument'),
)
'''sequence of `(errno, strerror)` pairs to look for in `stderr`'''


def quote(token: str) -> str:
    '''quote a token for a POSIX shell'''
    # plain_tokens/stay.as-is
    if _NO_QUOTE_NEEDED(token):
        return token
    # 'anything else goes in single quotes'"'"'with embedded quotes split'
    return "'" + token.replace("'", "'\"'\"'") + "'"


def join(tokens: Iterable[str]) -> str:
    '''convert verbatim argument list to safe command string'''
    return ' '.join(map(quote, map(str, tokens)))


def build_command(
    argv: Iterable[str],
    working_dir: str | os.PathLike | None = None,
    envs: Mapping[str, str] | None = None
) -> str:
    '''command line running `argv` in place of the remote shell

    - `working_dir` is entered first, a failed `cd` aborts the command
    - `envs` are set through `env NAME=VALUE ...`
    - raises `ValueError` for names that cannot be exported
    '''
    tokens = list(argv)
    if envs:
        for name in envs:
            if not _IS_VALID_ENV_VAR_NAME(name):
                raise ValueError(f'invalid environment variable name: {name!r}')
        tokens = ['env', *(f'{k}={v}' for k, v in envs.items()), *tokens]
    cmd = 'exec ' + join(tokens)
    if working_dir is not None:
        cmd = f'cd {quote(str(working_dir))} && {cmd}'
    return cmd


def stderr2oserror(stderr: bytes | str, name: object = None) -> OSError:
    '''convert stderr of a failed helper command to an `OSError`

    - errno is guessed from common messages, `EIO` if unrecognized
    - the stderr text, truncated to `STDERR_LIMIT` bytes, is the message
    '''
    if isinstance(stderr, bytes):
        stderr = stderr[:STDERR_LIMIT].decode('utf-8', 'replace')
    else:
        stderr = stderr[:STDERR_LIMIT]
    message = ' '.join(stderr.split())
    lowered = message.lower()
    if name is not None:
        lowered = lowered.replace(str(name).lower(), ' ')
    for code, text in _ERRNO_STR:
        if text in lowered:
            break
    else:
        code = errno.EIO
    message = message or os.strerror(code)
    if name is None:
        return OSError(code, message)
    return OSError(code, message, str(name))
