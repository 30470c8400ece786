import json
import os
from datetime import timedelta

import pytest

from lecture_attendance.config import RuntimeConfigStore, Settings
from lecture_attendance.exceptions import ConfigError
from lecture_attendance.storage import LocalStore, RemoteStore, open_gateway


def test_defaults_when_file_is_missing(tmp_path):
    store = RuntimeConfigStore(tmp_path / "runtime.json")
    config = store.current()

    assert config.recognition_threshold == 0.45
    assert config.lockout_window_minutes == 10
    assert config.storage_mode == "local"
    assert store.match_config().lockout_window == timedelta(minutes=10)


def test_update_persists_and_validates(tmp_path):
    path = tmp_path / "runtime.json"
    store = RuntimeConfigStore(path)
    store.update(recognition_threshold=0.5, lockout_window_minutes=3)

    assert json.loads(path.read_text())["recognition_threshold"] == 0.5
    assert RuntimeConfigStore(path).match_config().lockout_window == timedelta(minutes=3)

    with pytest.raises(ConfigError):
        store.update(recognition_threshold=1.5)
    with pytest.raises(ConfigError):
        store.update(lockout_window_minutes=-1)
    assert store.current().recognition_threshold == 0.5


def test_external_edit_is_picked_up(tmp_path):
    path = tmp_path / "runtime.json"
    store = RuntimeConfigStore(path)
    store.update(recognition_threshold=0.4)

    path.write_text(json.dumps({"recognition_threshold": 0.3}))
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000))

    assert store.match_config().threshold == 0.3


def test_broken_file_keeps_last_good_values(tmp_path):
    path = tmp_path / "runtime.json"
    store = RuntimeConfigStore(path)
    store.update(recognition_threshold=0.4)

    path.write_text("{not json")
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000))

    assert store.current().recognition_threshold == 0.4


def test_open_gateway_selects_backend(tmp_path):
    settings = Settings(data_dir=tmp_path)

    local = open_gateway(settings, "local")
    remote = open_gateway(settings, "remote")
    assert isinstance(local, LocalStore)
    assert isinstance(remote, RemoteStore)
    assert local.db_path == tmp_path / "attendance.db"
    remote.close()

    with pytest.raises(ValueError):
        open_gateway(settings, "cloud")
