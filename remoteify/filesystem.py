'''Filesystem contract and the value types it works with

The `Filesystem` protocol is implemented independently by each backend,
see `remoteify.ssh.SSHLinux` and `remoteify.local.LocalLinux`.
'''

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import enum
import os
from pathlib import PurePosixPath
import stat
from typing import Protocol, Self

PathLike = str | PurePosixPath
'''absolute POSIX path argument'''

_PERMISSION_MASK = 0o7777
'''setuid, setgid, sticky and rwx bits, no file type bits'''


class FileType(enum.Enum):
    '''kind of a filesystem entry, symlinks are never followed'''

    FILE = 'file'
    DIR = 'dir'
    SYMLINK = 'symlink'
    OTHER = 'other'

    @classmethod
    def from_mode(cls, mode: int) -> 'FileType':
        '''file type from the type bits of a `stat(2)` mode'''
        if stat.S_ISREG(mode):
            return cls.FILE
        if stat.S_ISDIR(mode):
            return cls.DIR
        if stat.S_ISLNK(mode):
            return cls.SYMLINK
        return cls.OTHER

    @classmethod
    def from_longname(cls, longname: str) -> 'FileType':
        '''file type from the first character of an `ls -l` style line'''
        return {
            '-': cls.FILE, 'd': cls.DIR, 'l': cls.SYMLINK
        }.get(longname[:1], cls.OTHER)


@dataclass(frozen=True)
class Permissions:
    '''POSIX mode bits, up to 16 bits including file type bits'''

    bits: int

    def __post_init__(self):
        if not 0 <= self.bits <= 0xFFFF:
            raise ValueError(f'mode out of 16-bit range: {self.bits:o}')

    @classmethod
    def from_bits(cls, bits: int) -> 'Permissions':
        '''permission bits only, file type bits are rejected'''
        if bits & ~_PERMISSION_MASK:
            raise ValueError(f'not a permission bit set: {bits:o}')
        return cls(bits)

    @classmethod
    def from_mode(cls, mode: int) -> 'Permissions':
        '''full mode as reported by `stat(2)` or an SFTP server'''
        return cls(mode & 0xFFFF)

    @property
    def mode(self) -> int:
        '''permission bits without the file type bits'''
        return self.bits & _PERMISSION_MASK

    @property
    def readonly(self) -> bool:
        return not self.bits & 0o222

    def __int__(self) -> int:
        return self.bits

    def __repr__(self) -> str:
        return f'Permissions(0o{self.bits:o})'


@dataclass(frozen=True)
class OpenOptions:
    '''how `Filesystem.open_file` opens a file, similar to `open(2)` flags

    - `read` and/or `write` pick O_RDONLY, O_WRONLY or O_RDWR
    - `append`, `truncate` and `create` add O_APPEND, O_TRUNC and O_CREAT
    - combinations are passed to the backend as-is, e.g. `truncate`
      without `write` fails there, not here
    '''

    read: bool = False
    write: bool = False
    append: bool = False
    truncate: bool = False
    create: bool = False

    def is_read(self) -> bool:
        return self.read

    def is_write(self) -> bool:
        return self.write

    def is_append(self) -> bool:
        return self.append

    def is_truncate(self) -> bool:
        return self.truncate

    def is_create(self) -> bool:
        return self.create

    def with_read(self) -> Self:
        return replace(self, read=True)

    def with_write(self) -> Self:
        return replace(self, write=True)

    def with_append(self) -> Self:
        return replace(self, append=True)

    def with_truncate(self) -> Self:
        return replace(self, truncate=True)

    def with_create(self) -> Self:
        return replace(self, create=True)

    def os_flags(self) -> int:
        '''equivalent `os.open` flags'''
        if self.write or self.append:
            flags = os.O_RDWR if self.read else os.O_WRONLY
        else:
            flags = os.O_RDONLY
        if self.append:
            flags |= os.O_APPEND
        if self.truncate:
            flags |= os.O_TRUNC
        if self.create:
            flags |= os.O_CREAT
        return flags


@dataclass(frozen=True)
class DirEntry:
    '''single entry of a directory listing'''

    path: PurePosixPath
    '''listed directory joined with `name`'''

    file_type: FileType
    '''type of the entry itself, symlinks are not followed'''

    name: str
    '''last path component'''


def _timestamp(seconds: float | None) -> datetime | None:
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, timezone.utc)


@dataclass(frozen=True)
class FileMetadata:
    '''result of `get_metadata` and `get_symlink_metadata`

    every field is optional because SFTP servers may omit any attribute
    '''

    file_type: FileType | None = None
    size: int | None = None
    permissions: Permissions | None = None
    modified_time: datetime | None = None
    accessed_time: datetime | None = None
    created_time: datetime | None = None
    user_id: int | None = None
    group_id: int | None = None
    user_name: str | None = None
    group_name: str | None = None

    @classmethod
    def from_stat_result(cls, st: os.stat_result) -> 'FileMetadata':
        '''metadata from a local `os.stat` / `os.lstat` call'''
        return cls(
            file_type=FileType.from_mode(st.st_mode),
            size=st.st_size,
            permissions=Permissions.from_mode(st.st_mode),
            modified_time=_timestamp(st.st_mtime),
            accessed_time=_timestamp(st.st_atime),
            created_time=_timestamp(getattr(st, 'st_birthtime', None)),
            user_id=st.st_uid,
            group_id=st.st_gid,
        )

    @classmethod
    def from_sftp_attrs(cls, attrs) -> 'FileMetadata':
        '''metadata from an `asyncssh.SFTPAttrs` record'''
        mode = attrs.permissions
        return cls(
            file_type=None if mode is None else FileType.from_mode(mode),
            size=attrs.size,
            permissions=None if mode is None else Permissions.from_mode(mode),
            modified_time=_timestamp(attrs.mtime),
            accessed_time=_timestamp(attrs.atime),
            created_time=_timestamp(attrs.crtime),
            user_id=attrs.uid,
            group_id=attrs.gid,
            user_name=attrs.owner,
            group_name=attrs.group,
        )


class FileStream(Protocol):
    '''open file handle returned by `Filesystem.open_file`

    handles are owned by the opener and must not be shared between tasks
    '''

    async def read(self, size: int = -1) -> bytes: ...

    async def write(self, data: bytes) -> int: ...

    async def seek(self, offset: int, whence: int = os.SEEK_SET) -> int: ...

    async def tell(self) -> int: ...

    async def close(self) -> None: ...

    async def __aenter__(self) -> Self: ...

    async def __aexit__(self, exc_type, exc_value, traceback) -> None: ...


class Filesystem(Protocol):
    '''asynchronous filesystem operations on absolute POSIX paths

    - any operation may raise `OSError` carrying the backend's diagnostic
    '''

    async def exists(self, path: PathLike) -> bool: ...

    async def create_file(self, path: PathLike) -> None: ...

    async def open_file(
        self, path: PathLike, options: OpenOptions
    ) -> FileStream: ...

    async def rename_file(
        self, old_path: PathLike, new_path: PathLike
    ) -> None: ...

    async def copy_file(
        self, old_path: PathLike, new_path: PathLike
    ) -> int | None: ...

    async def canonicalize(self, path: PathLike) -> PurePosixPath: ...

    async def create_symlink(
        self, source_path: PathLike, destination_path: PathLike
    ) -> None: ...

    async def create_hard_link(
        self, source_path: PathLike, destination_path: PathLike
    ) -> None: ...

    async def read_link(self, link_path: PathLike) -> PurePosixPath: ...

    async def set_permissions(
        self, path: PathLike, permissions: Permissions
    ) -> None: ...

    async def remove_file(self, path: PathLike) -> None: ...

    async def remove_dir(self, path: PathLike) -> None: ...

    async def remove_dir_recursively(self, path: PathLike) -> None: ...

    async def create_dir(self, path: PathLike) -> None: ...

    async def create_dir_recursively(self, path: PathLike) -> None: ...

    async def list_dir(self, path: PathLike) -> list[DirEntry]: ...

    async def get_metadata(self, path: PathLike) -> FileMetadata: ...

    async def get_symlink_metadata(self, path: PathLike) -> FileMetadata: ...
