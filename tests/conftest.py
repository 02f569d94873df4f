import socket
import threading

import pytest

from vbms.app import create_app
from vbms.config import CheckSettings
from vbms.extensions import db
from vbms.models import Server


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'DATABASE_PATH': str(tmp_path / 'servers.db'),
        'LOG_DIR': str(tmp_path / 'logs'),
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def settings():
    return CheckSettings(batch_size=10, probe_timeout=2, probe_deadline=5)


@pytest.fixture
def add_server(app):
    def _add(**fields):
        fields.setdefault('hostname', 'mail.example.test')
        fields.setdefault('ip', '127.0.0.1')
        with app.app_context():
            server = Server(**fields)
            db.session.add(server)
            db.session.commit()
            return server.id
    return _add


@pytest.fixture
def load_server(app):
    def _load(server_id):
        with app.app_context():
            server = db.session.get(Server, server_id)
            db.session.expunge(server)
            return server
    return _load


@pytest.fixture
def line_server():
    """Start a one-shot loopback TCP server that sends ``reply`` and closes."""
    started = []

    def _start(reply, read_request=False):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(('127.0.0.1', 0))
        sock.listen(1)
        received = []

        def serve():
            conn, _ = sock.accept()
            with conn:
                if read_request:
                    received.append(conn.recv(1024))
                if reply:
                    conn.sendall(reply)

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        started.append((sock, thread))
        return sock.getsockname()[1], received

    yield _start
    for sock, thread in started:
        thread.join(timeout=2)
        sock.close()
