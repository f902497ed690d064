import numpy as np
import pytest
from sqlalchemy.orm import sessionmaker

from stats_engine.db import init_db, make_engine
from stats_engine.repository import SqlAlchemyRepository
from stats_engine.service import StatsEngine


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random source so Monte Carlo results are reproducible."""
    return np.random.default_rng(42)


@pytest.fixture
def db_session():
    # Fresh in-memory SQLite database per test
    engine = make_engine("sqlite://")
    init_db(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSession()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture
def repo(db_session) -> SqlAlchemyRepository:
    return SqlAlchemyRepository(db_session)


@pytest.fixture
def stats_engine(repo, rng) -> StatsEngine:
    return StatsEngine(repo, rng)
