"""
Tests for the uvicorn console entry point.
"""

import uvicorn

from seo_crawler import main


def test_run_serves_app_with_settings(monkeypatch):
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(main.settings, "PORT", 9123)
    monkeypatch.setattr(main.settings, "ENV", "production")

    main.run()

    assert calls == [(
        "seo_crawler.main:app",
        {"host": main.settings.HOST, "port": 9123, "log_level": main.settings.LOG_LEVEL.lower(), "reload": False},
    )]
