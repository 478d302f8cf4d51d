import os
import pathlib
import sys

import pytest

# The application modules live in app/ and import each other from there
_APP_DIR = pathlib.Path(__file__).resolve().parents[1] / "app"
if str(_APP_DIR) not in sys.path:
    sys.path.insert(0, str(_APP_DIR))
_TESTS_DIR = pathlib.Path(__file__).resolve().parent
if str(_TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(_TESTS_DIR))


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    os.makedirs(path)
    return str(path)
