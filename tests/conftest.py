"""
Shared fixtures: an in-process aiohttp server standing in for the system
under test, served from its own event loop on a background thread so that
worker threads can hit it over real sockets.
"""

import asyncio
import threading
from collections import Counter

import pytest
from aiohttp import web


class MockTarget:
    """Tiny HTTP target with healthy, flaky, failing and slow endpoints."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.hits = Counter()
        self.attempts = Counter()
        self.port = None
        self._runner = None
        self._ready = threading.Event()
        self._thread = threading.Thread(target=self._serve, name="mock-target", daemon=True)

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def _app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ok", self.ok)
        app.router.add_get("/api/health", self.health)
        app.router.add_get("/flaky/{key}", self.flaky)
        app.router.add_get("/fail", self.fail)
        app.router.add_get("/slow", self.slow)
        app.router.add_post("/echo", self.echo)
        return app

    async def ok(self, request):
        self.hits["ok"] += 1
        await asyncio.sleep(0.01)
        return web.json_response({"status": "ok"})

    async def health(self, request):
        self.hits["health"] += 1
        return web.json_response({"status": "healthy"})

    async def flaky(self, request):
        """503 for the first two attempts of each key, then 200."""
        key = request.match_info["key"]
        self.attempts[key] += 1
        if self.attempts[key] <= 2:
            return web.json_response({"error": "unavailable"}, status=503)
        return web.json_response({"key": key})

    async def fail(self, request):
        self.hits["fail"] += 1
        return web.json_response({"error": "boom"}, status=500)

    async def slow(self, request):
        self.hits["slow"] += 1
        await asyncio.sleep(2.0)
        return web.json_response({"status": "late"})

    async def echo(self, request):
        payload = await request.json()
        return web.json_response({"received": payload, "request_id": request.headers.get("X-Request-ID")})

    def _serve(self):
        asyncio.set_event_loop(self.loop)
        self._runner = web.AppRunner(self._app())
        self.loop.run_until_complete(self._runner.setup())
        site = web.TCPSite(self._runner, "127.0.0.1", 0)
        self.loop.run_until_complete(site.start())
        self.port = self._runner.addresses[0][1]
        self._ready.set()
        self.loop.run_forever()

    def start(self):
        self._thread.start()
        if not self._ready.wait(timeout=10):
            raise RuntimeError("mock target did not start")

    def stop(self):
        future = asyncio.run_coroutine_threadsafe(self._runner.cleanup(), self.loop)
        future.result(timeout=10)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=10)


@pytest.fixture(scope="session")
def target():
    server = MockTarget()
    server.start()
    yield server
    server.stop()
