import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def database(tmp_path):
    from db import Database

    db = Database(str(tmp_path / "test.db"), max_connections=5)
    db.init()
    yield db
    db.close()


@pytest.fixture
def badge_catalog(tmp_path):
    """A small catalog so point arithmetic in tests stays predictable."""
    path = tmp_path / "badges.yaml"
    path.write_text(
        "badges:\n"
        "  - {name: First Steps, icon: x, points: 10, description: d, criteria: {type: course_completed, count: 1}}\n"
        "  - {name: Quiz Master, icon: x, points: 15, description: d, criteria: {type: quiz_passed, count: 1}}\n"
        "  - {name: Dedicated Learner, icon: x, points: 25, description: d, criteria: {type: streak, count: 5}}\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def gamification(database, badge_catalog):
    from gamification import GamificationService

    service = GamificationService(database, catalog_path=badge_catalog)
    service.seed_badges()
    return service


@pytest.fixture
def make_user(database):
    from auth import hash_password

    counter = {"n": 0}

    def _make(email=None, username=None, password="secret123"):
        counter["n"] += 1
        pw_hash, pw_salt = hash_password(password)
        return database.create_user(
            email or f"user{counter['n']}@example.com",
            username or f"user{counter['n']}",
            pw_hash,
            pw_salt,
        )

    return _make
