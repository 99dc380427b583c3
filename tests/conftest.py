import logging

import pytest

from backup_watch import BackupConfig


@pytest.fixture(autouse=True)
def reset_backup_logger():
    yield
    logger = logging.getLogger("backup_watch")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def source_dir(tmp_path):
    d = tmp_path / "source"
    d.mkdir()
    return d


@pytest.fixture
def backup_dir(tmp_path):
    d = tmp_path / "backup"
    d.mkdir()
    return d


@pytest.fixture
def config(source_dir, backup_dir):
    return BackupConfig(source_path=source_dir, backup_path=backup_dir, time_between_backups=24)


@pytest.fixture
def logger():
    return logging.getLogger("backup_watch")
