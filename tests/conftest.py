import os

import pytest

_PROXY_VARS = ("http_proxy", "https_proxy", "all_proxy", "no_proxy")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("CONNECT_TUNNEL_") or key.lower() in _PROXY_VARS:
            monkeypatch.delenv(key, raising=False)
    # main() maps CLI flags into os.environ directly
    saved = dict(os.environ)
    yield
    os.environ.clear()
    os.environ.update(saved)
