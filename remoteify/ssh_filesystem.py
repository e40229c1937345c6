'''Filesystem operations over SFTP, with exec helpers where SFTP has no request

| operation | request |
|---|---|
| copy_file | `cp -- old new` |
| create_hard_link | `ln -- src dst` |
| remove_dir_recursively | `rm -rf -- path` |
| create_dir_recursively | `mkdir -p -- path` |
| everything else | the SFTP v3 request of the same purpose |
'''

import errno
import logging
import os
from pathlib import PurePosixPath

import asyncssh
from asyncssh.constants import (
    FXF_APPEND, FXF_CREAT, FXF_EXCL, FXF_READ, FXF_TRUNC, FXF_WRITE
)

from .errors import ProcessError, ProcessIOError, SFTP_NO_SUCH_FILE, sftp2oserror
from .executor import ProcessConfiguration
from .filesystem import (
    DirEntry, FileMetadata, FileType, Filesystem, OpenOptions, PathLike,
    Permissions
)
from .shell import stderr2oserror
from .ssh_process import SSHExecutor
from .ssh_session import SSHSession

logger = logging.getLogger(__name__)


def sftp_pflags(options: OpenOptions) -> int:
    '''SFTP open flags equivalent to `options`'''
    pflags = 0
    if options.read:
        pflags |= FXF_READ
    if options.write or options.append:
        pflags |= FXF_WRITE
    if options.append:
        pflags |= FXF_APPEND
    if options.truncate:
        pflags |= FXF_TRUNC
    if options.create:
        pflags |= FXF_CREAT
    return pflags


class SFTPFileStream:
    '''`FileStream` over an open SFTP file handle'''

    def __init__(self, file: asyncssh.SFTPClientFile, path: str):
        self._file = file
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    async def read(self, size: int = -1) -> bytes:
        try:
            return await self._file.read(size)
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, self._path) from e

    async def write(self, data: bytes) -> int:
        try:
            return await self._file.write(bytes(data))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, self._path) from e

    async def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        try:
            return await self._file.seek(offset, whence)
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, self._path) from e

    async def tell(self) -> int:
        return await self._file.tell()

    async def close(self) -> None:
        try:
            await self._file.close()
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, self._path) from e

    async def __aenter__(self) -> 'SFTPFileStream':
        return self

    async def __aexit__(self, exc_type=None, exc_value=None, traceback=None):
        await self.close()


class SSHFilesystem(Filesystem):
    '''filesystem of the SSH peer'''

    def __init__(self, session: SSHSession):
        self.session = session

    @property
    def sftp(self) -> asyncssh.SFTPClient:
        return self.session.sftp

    async def _helper(self, *argv: str, path: PathLike) -> None:
        '''run a coreutils helper, non-zero status raises `OSError`'''
        config = ProcessConfiguration(
            argv[0], [str(arg) for arg in argv[1:]], redirect_stderr=True
        )
        try:
            output = await SSHExecutor(self.session).execute(config)
        except ProcessIOError as e:
            raise e.inner from e
        except ProcessError as e:
            raise OSError(errno.EIO, str(e), str(path)) from e
        if output.status_code != 0:
            logger.debug(
                '%s exited with %r: %r',
                argv[0], output.status_code, output.stderr
            )
            raise stderr2oserror(output.stderr or b'', path)

    async def exists(self, path: PathLike) -> bool:
        try:
            await self.sftp.stat(str(path))
        except asyncssh.SFTPError as e:
            if e.code == SFTP_NO_SUCH_FILE:
                return False
            raise sftp2oserror(e, path) from e
        return True

    async def create_file(self, path: PathLike) -> None:
        try:
            file = await self.sftp.open(
                str(path), FXF_WRITE | FXF_CREAT | FXF_EXCL, encoding=None
            )
            await file.close()
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e

    async def open_file(
        self, path: PathLike, options: OpenOptions
    ) -> SFTPFileStream:
        try:
            file = await self.sftp.open(
                str(path), sftp_pflags(options), encoding=None
            )
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e
        return SFTPFileStream(file, str(path))

    async def rename_file(self, old_path: PathLike, new_path: PathLike) -> None:
        try:
            await self.sftp.rename(str(old_path), str(new_path))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, old_path, new_path) from e

    async def copy_file(
        self, old_path: PathLike, new_path: PathLike
    ) -> int | None:
        '''copy with `cp`, the copied size is not reported so `None`'''
        await self._helper('cp', '--', old_path, new_path, path=old_path)
        return None

    async def canonicalize(self, path: PathLike) -> PurePosixPath:
        try:
            return PurePosixPath(await self.sftp.realpath(str(path)))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e

    async def create_symlink(
        self, source_path: PathLike, destination_path: PathLike
    ) -> None:
        try:
            await self.sftp.symlink(str(source_path), str(destination_path))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, source_path, destination_path) from e

    async def create_hard_link(
        self, source_path: PathLike, destination_path: PathLike
    ) -> None:
        await self._helper(
            'ln', '--', source_path, destination_path, path=source_path
        )

    async def read_link(self, link_path: PathLike) -> PurePosixPath:
        try:
            return PurePosixPath(await self.sftp.readlink(str(link_path)))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, link_path) from e

    async def set_permissions(
        self, path: PathLike, permissions: Permissions
    ) -> None:
        attrs = asyncssh.SFTPAttrs(permissions=permissions.mode)
        try:
            await self.sftp.setstat(str(path), attrs)
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e

    async def remove_file(self, path: PathLike) -> None:
        try:
            await self.sftp.remove(str(path))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e

    async def remove_dir(self, path: PathLike) -> None:
        try:
            await self.sftp.rmdir(str(path))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e

    async def remove_dir_recursively(self, path: PathLike) -> None:
        await self._helper('rm', '-rf', '--', path, path=path)

    async def create_dir(self, path: PathLike) -> None:
        try:
            await self.sftp.mkdir(str(path))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e

    async def create_dir_recursively(self, path: PathLike) -> None:
        await self._helper('mkdir', '-p', '--', path, path=path)

    async def list_dir(self, path: PathLike) -> list[DirEntry]:
        parent = PurePosixPath(path)
        try:
            names = await self.sftp.readdir(str(path))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e
        entries = []
        for name in names:
            if name.filename in ('.', '..'):
                continue
            if name.attrs.permissions is not None:
                file_type = FileType.from_mode(name.attrs.permissions)
            else:
                file_type = FileType.from_longname(name.longname or '')
            entries.append(
                DirEntry(parent / name.filename, file_type, name.filename)
            )
        return entries

    async def get_metadata(self, path: PathLike) -> FileMetadata:
        try:
            return FileMetadata.from_sftp_attrs(await self.sftp.stat(str(path)))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e

    async def get_symlink_metadata(self, path: PathLike) -> FileMetadata:
        try:
            return FileMetadata.from_sftp_attrs(await self.sftp.lstat(str(path)))
        except asyncssh.SFTPError as e:
            raise sftp2oserror(e, path) from e
