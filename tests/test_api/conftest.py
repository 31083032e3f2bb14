"""
API test fixtures: TestClient wired to the in-memory database
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from followup.api.deps import current_user_id, get_db
from followup.main import app


@pytest.fixture
def client(db_engine):
    """Test client with get_db bound to the test engine (no scheduler: lifespan not entered)"""
    SessionLocal = sessionmaker(bind=db_engine)

    def _get_test_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_test_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def api_user(make_user):
    return make_user(email="api@example.com")


@pytest.fixture
def authenticated_client(client, api_user):
    """Client whose session resolves to api_user"""
    app.dependency_overrides[current_user_id] = lambda: api_user.id
    return client
