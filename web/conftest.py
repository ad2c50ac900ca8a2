import pytest

from apps.orders import providers


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings, monkeypatch):
    # In-process stubs and a fresh in-memory channel for every test
    settings.USE_HTTP_ADAPTERS = False
    settings.DELIVERY_EVENTS_BACKEND = "memory"
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    monkeypatch.setattr(providers, "_memory_channel", None)
