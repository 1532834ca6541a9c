from __future__ import annotations

import threading
import urllib.error
import urllib.request
from collections.abc import Callable

from configmap_controller.src.health import ProbeRegistry, ping, start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


def _synced_check(event: threading.Event) -> Callable[[], None]:
    def check() -> None:
        if not event.is_set():
            raise RuntimeError("cache not synced")

    return check


def test_registry_reports_each_check() -> None:
    registry = ProbeRegistry()
    registry.add_readyz_check("ping", ping)
    registry.add_readyz_check("informer", _synced_check(threading.Event()))

    healthy, lines = registry.evaluate("/readyz")

    assert healthy is False
    assert lines == ["[-]informer failed: cache not synced", "[+]ping ok"]


def test_registry_only_handles_probe_paths() -> None:
    registry = ProbeRegistry()

    assert registry.handles("/healthz")
    assert registry.handles("/readyz")
    assert not registry.handles("/metrics")


class TestHealthServer:
    """Tests for the probe HTTP server."""

    def setup_method(self) -> None:
        self.synced = threading.Event()
        self.registry = ProbeRegistry()
        self.registry.add_healthz_check("ping", ping)
        self.registry.add_readyz_check("ping", ping)
        self.registry.add_readyz_check("informer", _synced_check(self.synced))
        self.server = start_health_server(self.registry, port=0)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()
        self.server.server_close()

    def test_healthz_returns_ok(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_healthz_verbose_lists_checks(self) -> None:
        status, body = _get(f"{self.base_url}/healthz?verbose")
        assert status == 200
        assert body.splitlines() == ["[+]ping ok", "healthz check passed"]

    def test_readyz_fails_until_check_passes(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 500
        assert "[-]informer failed: cache not synced" in body
        assert body.endswith("readyz check failed")

        self.synced.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ok"

    def test_trailing_slash_is_accepted(self) -> None:
        status, _ = _get(f"{self.base_url}/healthz/")
        assert status == 200

    def test_unknown_path_returns_404(self) -> None:
        status, _ = _get(f"{self.base_url}/nope")
        assert status == 404
