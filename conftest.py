# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as service_app  # noqa: E402
from crm_sync.models import Location, Organization, User, db  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """Create and configure a test Flask application"""
    import uuid

    # Create a unique temporary database file for each test
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")

    try:
        service_app.config.update(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SECRET_KEY": "test-secret-key-for-testing-only",
                "ERROR_ALERTING_ENABLED": False,
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": True,
                "LOG_LEVEL": "DEBUG",
                "CRM_SYNC_ENABLED": True,
                "CRM_SYNC_PROVIDERS": ("dynamics365",),
                "CRM_SYNC_WORKER_ENABLED": False,
                "CRM_SYNC_WEBHOOK_ASYNC": False,
                "CRM_SYNC_PASS_TIMEOUT_SECONDS": None,
            }
        )

        # Re-initialize logging with updated config to pick up LOG_LEVEL=DEBUG
        from crm_sync.utils.logging_config import setup_logging

        setup_logging(service_app)

        with service_app.app_context():
            # Drop any existing tables to ensure clean state
            db.drop_all()
            db.create_all()
            yield service_app
            db.session.remove()
            db.session.close()
            db.drop_all()
    finally:
        # Always close and remove the temporary database file, even on error
        try:
            os.close(db_fd)
        except OSError:
            pass
        try:
            if os.path.exists(temp_db):
                os.unlink(temp_db)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def test_organization(app):
    """Create a test organization fixture
    Note: app_context fixture is autouse, so app context is already available
    """
    organization = Organization(title="Test Organization", description="A test organization")
    db.session.add(organization)
    db.session.commit()
    return organization


@pytest.fixture
def test_location(app, test_organization):
    """Create a test location owned by ``test_organization``"""
    location = Location(
        title="Main Office",
        address="1 Main Street",
        city="Springfield",
        state="IL",
        zip_code="62701",
        organization_id=test_organization.id,
    )
    db.session.add(location)
    db.session.commit()
    return location


@pytest.fixture
def test_user(app):
    """Create a test user fixture"""
    user = User(
        email="test@example.com",
        first_name="Test",
        last_name="User",
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "webhooks: marks tests covering the webhook receiver")
