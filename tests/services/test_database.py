import gzip
import io
import subprocess

import pytest

from laradeploy.errors import BackupError, DeploymentError, RollbackError
from laradeploy.models import DatabaseRef
from laradeploy.services.database import DatabaseService, safe_identifier


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class RecordingPipe(io.BytesIO):
    def close(self):
        self.received = self.getvalue()
        super().close()


class FakeProcess:
    def __init__(self, returncode, stderr_text, stderr):
        self.stdin = RecordingPipe()
        self.returncode = returncode
        self.stderr_text = stderr_text
        self.stderr = stderr
        self.killed = False

    def wait(self, timeout=None):
        if self.stderr_text:
            self.stderr.write(self.stderr_text)
        return self.returncode

    def kill(self):
        self.killed = True


class FakeSubprocess:
    PIPE = subprocess.PIPE
    DEVNULL = subprocess.DEVNULL
    SubprocessError = subprocess.SubprocessError
    CalledProcessError = subprocess.CalledProcessError

    def __init__(self, output=b"CREATE TABLE users (id int);\n", returncode=0, stderr_text=b""):
        self.output = output
        self.returncode = returncode
        self.stderr_text = stderr_text
        self.calls = []
        self.processes = []

    def run(self, cmd, stdout=None, **kwargs):
        self.calls.append(cmd)
        if self.returncode != 0:
            raise subprocess.CalledProcessError(self.returncode, cmd, stderr=b"Access denied")
        stdout.write(self.output)
        return subprocess.CompletedProcess(cmd, 0)

    def Popen(self, cmd, stdin=None, stdout=None, stderr=None):
        self.calls.append(cmd)
        process = FakeProcess(self.returncode, self.stderr_text, stderr)
        self.processes.append(process)
        return process


def _ref(name="shop_db"):
    return DatabaseRef(name=name, user="shop_user")


def test_safe_identifier_strips_unsupported_characters():
    assert safe_identifier("My-Shop.v2") == "myshopv2"
    assert safe_identifier("---") == "app"


def test_dump_writes_gzip_and_removes_raw_file(tmp_path):
    fake_subprocess = FakeSubprocess()
    service = DatabaseService(
        logger=DummyLogger(),
        console=DummyConsole(),
        run_cmd=None,
        subprocess_module=fake_subprocess,
    )
    dest = tmp_path / "database.sql.gz"

    service.dump(_ref(), str(dest))

    with gzip.open(dest, "rb") as file_obj:
        assert b"CREATE TABLE users" in file_obj.read()
    assert not (tmp_path / "database.sql.gz.raw").exists()
    assert fake_subprocess.calls[0][0] == "mysqldump"
    assert fake_subprocess.calls[0][-1] == "shop_db"
    assert "--hex-blob" in fake_subprocess.calls[0]


def test_dump_failure_raises_backup_error_and_leaves_nothing(tmp_path):
    service = DatabaseService(
        logger=DummyLogger(),
        console=DummyConsole(),
        run_cmd=None,
        subprocess_module=FakeSubprocess(returncode=2),
    )
    dest = tmp_path / "database.sql.gz"

    with pytest.raises(BackupError, match="shop_db"):
        service.dump(_ref(), str(dest))

    assert list(tmp_path.iterdir()) == []


def _write_dump(path, payload):
    with gzip.open(path, "wb") as file_obj:
        file_obj.write(payload)


def _recording_run_cmd(calls):
    def fake_run_cmd(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    return fake_run_cmd


def test_restore_recreates_database_and_streams_dump_through_stdin(tmp_path):
    dump = tmp_path / "database.sql.gz"
    _write_dump(dump, b"INSERT INTO users VALUES (1);\n")
    calls = []
    fake_subprocess = FakeSubprocess()

    service = DatabaseService(
        logger=DummyLogger(),
        console=DummyConsole(),
        run_cmd=_recording_run_cmd(calls),
        subprocess_module=fake_subprocess,
    )
    service.restore(_ref(), str(dump))

    assert "DROP DATABASE IF EXISTS `shop_db`" in calls[0][0][-1]
    assert calls[0][1]["error_cls"] is RollbackError
    assert fake_subprocess.calls == [["mysql", "shop_db"]]
    assert fake_subprocess.processes[0].stdin.received == b"INSERT INTO users VALUES (1);\n"


def test_restore_passes_non_utf8_bytes_through_unchanged(tmp_path):
    payload = b"INSERT INTO blobs VALUES ('caf\xe9');\n\xff\xfe\x00"
    dump = tmp_path / "database.sql.gz"
    _write_dump(dump, payload)
    fake_subprocess = FakeSubprocess()

    service = DatabaseService(
        logger=DummyLogger(),
        console=DummyConsole(),
        run_cmd=_recording_run_cmd([]),
        subprocess_module=fake_subprocess,
    )
    service.restore(_ref(), str(dump))

    assert fake_subprocess.processes[0].stdin.received == payload


def test_restore_failure_reports_mysql_error_output(tmp_path):
    dump = tmp_path / "database.sql.gz"
    _write_dump(dump, b"NOT SQL;\n")
    fake_subprocess = FakeSubprocess(returncode=1, stderr_text=b"ERROR 1064 (42000): syntax error")

    service = DatabaseService(
        logger=DummyLogger(),
        console=DummyConsole(),
        run_cmd=_recording_run_cmd([]),
        subprocess_module=fake_subprocess,
    )

    with pytest.raises(RollbackError, match="ERROR 1064"):
        service.restore(_ref(), str(dump))


def test_restore_without_dump_file_raises_rollback_error(tmp_path):
    service = DatabaseService(
        logger=DummyLogger(),
        console=DummyConsole(),
        run_cmd=_recording_run_cmd([]),
        subprocess_module=FakeSubprocess(),
    )

    with pytest.raises(RollbackError, match="not found"):
        service.restore(_ref(), str(tmp_path / "missing.sql.gz"))


def test_provision_never_puts_password_on_the_command_line():
    calls = []

    def fake_run_cmd(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    service = DatabaseService(logger=DummyLogger(), console=DummyConsole(), run_cmd=fake_run_cmd)
    service.provision(_ref(), "s3cr'et")

    cmd, kwargs = calls[0]
    assert cmd == ["mysql"]
    assert "s3cr'et" not in " ".join(cmd)
    assert "IDENTIFIED BY 's3cr\\'et'" in kwargs["input_text"]
    assert "GRANT ALL PRIVILEGES ON `shop_db`.*" in kwargs["input_text"]


def test_invalid_identifier_is_rejected_before_running_anything():
    def fake_run_cmd(cmd, **kwargs):
        raise AssertionError("no command should run")

    service = DatabaseService(logger=DummyLogger(), console=DummyConsole(), run_cmd=fake_run_cmd)

    with pytest.raises(DeploymentError, match="Invalid database name"):
        service.exists(_ref("shop`; DROP"))


def test_exists_matches_exact_database_name():
    def fake_run_cmd(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 0, stdout="shop_db\n", stderr="")

    service = DatabaseService(logger=DummyLogger(), console=DummyConsole(), run_cmd=fake_run_cmd)

    assert service.exists(_ref()) is True
    assert service.exists(_ref("other_db")) is False
