import errno
import subprocess

import pytest

from remoteify.shell import STDERR_LIMIT, build_command, join, quote, stderr2oserror


@pytest.mark.parametrize('token, quoted', [
    ('hello', 'hello'),
    ('/tmp/a-b_c.txt', '/tmp/a-b_c.txt'),
    ('user@host:22', 'user@host:22'),
    ('', "''"),
    ('two words', "'two words'"),
    ('$HOME', "'$HOME'"),
    ("it's", "'it'\"'\"'s'"),
    ('a;b', "'a;b'"),
    ('victim\n', "'victim\n'"),
    ('\n', "'\n'"),
    ('a\nb', "'a\nb'"),
])
def test_quote(token, quoted):
    assert quote(token) == quoted


def test_join_survives_the_shell():
    argv = ['printf', '%s\n', "it's", '$HOME', 'a b', '*', '']
    out = subprocess.run(
        ['sh', '-c', join(argv)], capture_output=True, check=True
    ).stdout
    assert out == b"it's\n$HOME\na b\n*\n\n"


def test_build_command():
    assert build_command(['echo', 'hi']) == 'exec echo hi'
    assert build_command(['ls'], '/tmp/my dir') == "cd '/tmp/my dir' && exec ls"
    assert build_command(['printenv', 'A'], envs={'A': 'x y'}) == (
        "exec env 'A=x y' printenv A"
    )


def test_trailing_newline_stays_in_the_token(tmp_path):
    victim = tmp_path / 'victim'
    victim.mkdir()
    cmd = build_command(['rm', '-rf', f'{victim}\n'])
    assert cmd == f"exec rm -rf '{victim}\n'"
    subprocess.run(['sh', '-c', cmd], check=True)
    assert victim.is_dir()

    cmd = build_command(['printf', '[%s]', 'arg\n'], f'{tmp_path}\n')
    result = subprocess.run(['sh', '-c', cmd], capture_output=True)
    # no such dir, the newline belongs to the path
    assert result.returncode != 0
    assert result.stdout == b''


def test_build_command_runs(tmp_path):
    cmd = build_command(['sh', '-c', 'pwd; echo "$GREETING"'], tmp_path, {'GREETING': 'hi there'})
    out = subprocess.run(
        ['sh', '-c', cmd], capture_output=True, check=True, text=True
    ).stdout
    assert out == f'{tmp_path}\nhi there\n'


def test_build_command_rejects_bad_env_names():
    with pytest.raises(ValueError):
        build_command(['true'], envs={'A=B': 'x'})
    with pytest.raises(ValueError):
        build_command(['true'], envs={'1A': 'x'})


def test_stderr2oserror_errno():
    e = stderr2oserror(b"rm: cannot remove '/x': Permission denied\n", '/x')
    assert e.errno == errno.EACCES
    assert e.filename == '/x'
    assert 'Permission denied' in e.strerror

    e = stderr2oserror("cp: cannot stat '/nope': No such file or directory")
    assert e.errno == errno.ENOENT


def test_stderr2oserror_ignores_file_name():
    # a path that looks like a message must not pick the errno
    e = stderr2oserror("mkdir: cannot create '/file exists': Read-only file system", '/file exists')
    assert e.errno == errno.EROFS


def test_stderr2oserror_unknown():
    e = stderr2oserror(b'something odd')
    assert e.errno == errno.EIO
    assert e.strerror == 'something odd'
    assert stderr2oserror(b'').strerror


def test_stderr2oserror_truncates():
    e = stderr2oserror(b'x' * (STDERR_LIMIT * 4))
    assert len(e.strerror) == STDERR_LIMIT
