import pytest

from hl7_engine.db import get_engine, init_db, make_session_factory


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    engine = get_engine("sqlite://")
    init_db(engine)
    session = make_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()
