import datetime
import itertools

import pytest

import portal_logs
import school_portal
from portal_data import DataManager


class Clock:
    """Deterministic clock: each call is one second after the previous one."""

    def __init__(self, start=datetime.datetime(2024, 3, 1, 8, 0, tzinfo=datetime.timezone.utc)):
        self._ticks = itertools.count()
        self.start = start

    def __call__(self):
        return self.start + datetime.timedelta(seconds=next(self._ticks))


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    d = tmp_path / "logs"
    monkeypatch.setattr(portal_logs, "LOG_DIR", str(d))
    return d


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "portal.json")


@pytest.fixture
def dm(store_path):
    return DataManager(store_path, now=Clock())


@pytest.fixture
def client(store_path, monkeypatch):
    monkeypatch.setattr(school_portal, "portal", None)
    school_portal.init_portal(store_path, now=Clock())
    school_portal.flask_app.config["TESTING"] = True
    with school_portal.flask_app.test_client() as c:
        yield c


def make_teacher(dm, username, name=None, complete=True):
    user = dm.add_user(username, "pw", "teacher")
    if complete:
        dm.update_teacher_profile(user["id"], {"name": name or username.title(), "subject": "Math"})
    return user


def make_student(dm, username, name=None, complete=True):
    user = dm.add_user(username, "pw", "student")
    if complete:
        dm.update_student_profile(user["id"], {"name": name or username.title(), "class": "7A"})
    return user
