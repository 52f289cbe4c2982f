import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from builders import FIXED_NOW
from db import get_session_factory, init_schema


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_schema(engine)
    yield get_session_factory(engine)
    engine.dispose()
