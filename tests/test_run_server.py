from __future__ import annotations

import pytest

from scripts import run_server


@pytest.fixture
def uvicorn_calls(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    calls: list[tuple[str, dict]] = []

    def fake_run(app: str, **kwargs) -> None:
        calls.append((app, kwargs))

    monkeypatch.setattr(run_server.uvicorn, "run", fake_run)
    return calls


def test_main_serves_the_review_app(uvicorn_calls, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOST", "127.0.0.1")
    monkeypatch.setenv("PORT", "9001")
    monkeypatch.setenv("ENVIRONMENT", "production")

    run_server.main()

    assert uvicorn_calls == [
        ("quality_review.web.main:app", {"host": "127.0.0.1", "port": 9001, "reload": False})
    ]


def test_development_enables_reload(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HOST", raising=False)
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "development")

    assert run_server.server_options() == {"host": "0.0.0.0", "port": 8000, "reload": True}
