import datetime as dt
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import csv_task_tracker as ctt  # noqa: E402


SAMPLE_CSV = (
    '"TaskID","Task","Status","AssignedUser","DueDate","Priority","Notes"\n'
    '"1","Write report","In Progress","alice","2025-07-20","High","Review final draft"\n'
    '"2","Old chores","Completed","bob","2025-07-01","Low",""\n'
    '"3","Plan trip","Not Started","alice","","Medium","Line one\nLine two"\n'
)


@pytest.fixture
def sample_csv_text():
    return SAMPLE_CSV


@pytest.fixture
def store():
    """A fresh store whose 'current user' is always ``tester``."""
    return ctt.TaskStore(user_provider=lambda: 'tester')


@pytest.fixture
def fixed_cfg():
    return ctt.Config(storage='fixed', csv_path='tasks.csv')


@pytest.fixture
def archive_cfg():
    return ctt.Config(storage='archive', archive_dir='CSV')


@pytest.fixture
def frozen_clock():
    """Clock returning a fixed moment; ``frozen_clock.now`` can be reassigned."""
    class _Clock:
        now = dt.datetime(2025, 7, 20, 9, 30, 15, 123456)

        def __call__(self):
            return self.now

    return _Clock()
