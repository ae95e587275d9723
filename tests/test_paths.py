from repartition import executil, paths


def test_base_path_override(tmp_path, monkeypatch):
    monkeypatch.setenv("REPART_BASE_PATH", str(tmp_path / "state"))
    assert paths.base_path() == str(tmp_path / "state")
    assert paths.logs_dir() == str(tmp_path / "state" / "logs")


def test_default_log_dirs_start_with_base(tmp_path, monkeypatch):
    monkeypatch.setenv("REPART_BASE_PATH", str(tmp_path))
    monkeypatch.setattr(executil, "LOG_DIRS", None)
    assert executil._log_dirs()[0] == str(tmp_path / "logs")


def test_mount_base(monkeypatch):
    monkeypatch.delenv("REPART_MOUNT_BASE", raising=False)
    assert paths.default_mount_base() == "/mnt/repartition"
    monkeypatch.setenv("REPART_MOUNT_BASE", "/run/repart")
    assert paths.default_mount_base() == "/run/repart"
