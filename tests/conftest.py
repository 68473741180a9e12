import os
import tempfile

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))
os.environ.setdefault("LEDGER_SCHEDULER_ENABLED", "false")

import pytest  # noqa: E402

import models  # noqa: E402,F401
from database import Base, create_ledger_engine, make_session_factory  # noqa: E402
from schemas import UserIn  # noqa: E402
from services import UserService  # noqa: E402
from store import LedgerStore  # noqa: E402


@pytest.fixture
def store():
    engine = create_ledger_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield LedgerStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def user_id(store):
    return UserService(store).create(UserIn(username="asha")).id
