import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for `import invite_tracker`
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from invite_tracker.models import close_db, init_db  # noqa: E402


@pytest.fixture
def db(tmp_path):
    database = init_db(str(tmp_path / "invites.db"))
    yield database
    close_db()
