import pytest

from everly import create_app
from everly.config import TestingConfig
from everly.models import db
from everly.nudges.queue import NewNudgeJob, NudgeQueueStore
from everly.nudges.template import dedupe_key


@pytest.fixture
def app():
    """Create Flask application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def store(app):
    return NudgeQueueStore(lease_timeout_seconds=300, retry_base_seconds=60)


@pytest.fixture
def make_job():
    """Factory for NewNudgeJob with a dedupe key derived from hub/recipe/member."""
    def _make(hub_id="hub_1", member_id="mem_1", recipe_name="welcome", message="Hello!", **kwargs):
        return NewNudgeJob(
            hub_id=hub_id,
            member_id=member_id,
            recipe_name=recipe_name,
            message=message,
            dedupe_key=kwargs.pop("dedupe_key", dedupe_key(hub_id, recipe_name, member_id)),
            **kwargs
        )
    return _make


@pytest.fixture
def worker_headers():
    return {"Authorization": f"Bearer {TestingConfig.NUDGE_WORKER_SECRET}"}
