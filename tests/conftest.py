import threading

import pytest

from dotweb.server import WebServer


@pytest.fixture
def serve():
    running = []

    def _serve(config, **kwargs):
        server = WebServer(config, **kwargs).bind()
        t = threading.Thread(target=server.serve_forever, daemon=True)
        t.start()
        running.append((server, t))
        return server

    yield _serve
    for server, t in running:
        server.shutdown()
        t.join(5)
