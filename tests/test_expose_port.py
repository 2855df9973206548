import os
from unittest import mock

import pytest

from vpnproxy.addresses import TCPAddress, UnixAddress
from vpnproxy.expose_port import expose_port

HOST = TCPAddress("127.0.0.1", 8080)
CONTAINER = TCPAddress("172.17.0.2", 80)
NAME = "tcp:127.0.0.1:8080:tcp:172.17.0.2:80"


@pytest.fixture
def control_fs(monkeypatch):
    """Make mkdir behave like the control filesystem: it creates a ctl file."""
    real_mkdir = os.mkdir

    def fake_mkdir(path, mode=0o777, *, dir_fd=None):
        real_mkdir(path, 0o755)
        with open(os.path.join(path, "ctl"), "wb"):
            pass

    monkeypatch.setattr(os, "mkdir", fake_mkdir)


def test_expose_writes_name_and_returns_control_file(tmp_path, control_fs):
    handle = expose_port(HOST, CONTAINER, str(tmp_path))
    try:
        handle.seek(0)
        assert handle.read() == NAME.encode()
    finally:
        handle.close()
    assert (tmp_path / NAME / "ctl").exists()


def test_expose_unix_name(tmp_path, control_fs):
    host = UnixAddress("/var/run/docker.sock")
    container = UnixAddress("/run/docker.sock")
    expected = "unix:/var/run/docker.sock:unix:/run/docker.sock"
    # The slashes in Unix paths make this a nested directory.
    (tmp_path / "unix:").mkdir()
    (tmp_path / "unix:" / "var").mkdir()
    (tmp_path / "unix:" / "var" / "run").mkdir()
    (tmp_path / "unix:" / "var" / "run" / "docker.sock:unix:").mkdir()
    (tmp_path / "unix:" / "var" / "run" / "docker.sock:unix:" / "run").mkdir()
    handle = expose_port(host, container, str(tmp_path))
    try:
        handle.seek(0)
        assert handle.read() == expected.encode()
    finally:
        handle.close()


def test_error_response_raises_and_removes_ctl(tmp_path, control_fs):
    with mock.patch.object(os, "read", return_value=b"ERROR  port already in use\n"):
        with pytest.raises(RuntimeError, match="^port already in use$"):
            expose_port(HOST, CONTAINER, str(tmp_path))
    assert not (tmp_path / NAME / "ctl").exists()


def test_existing_directory_is_an_error(tmp_path):
    (tmp_path / NAME).mkdir()
    with pytest.raises(FileExistsError):
        expose_port(HOST, CONTAINER, str(tmp_path))


def test_missing_root_is_an_error(tmp_path):
    with pytest.raises(FileNotFoundError):
        expose_port(HOST, CONTAINER, str(tmp_path / "missing"))