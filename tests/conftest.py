from datetime import datetime, timezone

import pytest

from taskctl.db import connect_db, init_db
from taskctl.tasks import TaskRegistry

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_file(tmp_path):
    path = str(tmp_path / "taskctl-test.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_file):
    c = connect_db(db_file)
    yield c
    c.close()


@pytest.fixture
def tasks():
    return TaskRegistry()


@pytest.fixture
def now():
    return NOW
