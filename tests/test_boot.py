from __future__ import annotations

import pytest

from pubdate import create_app
from pubdate.config import ExtractorSettings
from pubdate.startup_check import verify_imports


@pytest.fixture
def app():
    settings = ExtractorSettings(
        RENDER_ENABLED=False, WORKERS_ENABLED=False, QUEUE_BACKEND="memory"
    )
    app = create_app(config=settings, test_config={"TESTING": True})
    yield app
    app.extensions["pubdate"].shutdown()


def test_app_boots_with_real_services(app) -> None:
    """The default wiring builds an in-memory queue and no browser."""
    response = app.test_client().get("/health")

    assert response.status_code == 200
    details = response.json["details"]
    assert details["workers"] is False
    assert details["browser"] is False
    assert details["pending_jobs"] == 0


def test_invalid_url_answers_without_workers(app) -> None:
    response = app.test_client().get("/api/get-date?url=mailto:someone@example.com")

    assert response.json["errorType"] == "validation"
    assert response.json["error"] == "Please enter a valid URL"


def test_verify_imports_reports_broken_module() -> None:
    verify_imports()
    with pytest.raises(RuntimeError, match="pubdate.missing_module"):
        verify_imports(["pubdate.missing_module"])
