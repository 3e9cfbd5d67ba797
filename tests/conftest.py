import os
import tempfile

# point the app at a throwaway database before safepath.db is imported
_tmp_dir = tempfile.mkdtemp(prefix="safepath-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_tmp_dir, 'test.db')}")
os.environ.setdefault("DATA_DIR", _tmp_dir)
os.environ.setdefault("ORS_API_KEY", "test-key")

import pytest

from fakes import SleepRecorder


@pytest.fixture
def sleeps():
    return SleepRecorder()
