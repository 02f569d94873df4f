import threading

import pytest

from vbms.config import CheckSettings
from vbms.errors import PersistError
from vbms.extensions import db
from vbms.functions import probes
from vbms.functions.server_checker import CHECK_TIMED_OUT, persist_results, run_checks
from vbms.models import Server


@pytest.fixture
def fake_probes(monkeypatch):
    """Replace every probe with one that returns '<PROTOCOL> ok'."""
    calls = []

    def make(name):
        def _probe(record, **kwargs):
            calls.append(name)
            return f'{name} ok'
        return _probe

    for name in probes.PROBES:
        monkeypatch.setitem(probes.PROBES, name, make(name))
    return calls


def snapshot(app, server_id):
    with app.app_context():
        return db.session.get(Server, server_id).snapshot()


def all_enabled(**fields):
    fields.update(enable_http=True, enable_smtp=True, enable_pop3=True, enable_https=True)
    fields.setdefault('enable_ping', True)
    return fields


def test_results_are_persisted_after_checks(app, settings, add_server, load_server, fake_probes):
    server_id = add_server(**all_enabled())

    run_checks(app, snapshot(app, server_id), settings)

    server = load_server(server_id)
    assert server.http_result == 'HTTP ok'
    assert server.smtp_result == 'SMTP ok'
    assert server.pop3_result == 'POP3 ok'
    assert server.https_result == 'HTTPS ok'
    assert server.ping_result == 'PING ok'
    assert sorted(fake_probes) == ['HTTP', 'HTTPS', 'PING', 'POP3', 'SMTP']


def test_disabled_check_keeps_previous_result(app, settings, add_server, load_server, fake_probes):
    server_id = add_server(**all_enabled(enable_ping=False, ping_result='IP Addr: 10.0.0.1 receive, RTT: 1.000ms'))

    run_checks(app, snapshot(app, server_id), settings)

    server = load_server(server_id)
    assert server.ping_result == 'IP Addr: 10.0.0.1 receive, RTT: 1.000ms'
    assert server.http_result == 'HTTP ok'
    assert 'PING' not in fake_probes


def test_failing_check_does_not_affect_others(app, settings, add_server, load_server, fake_probes, monkeypatch):
    def broken(record, **kwargs):
        raise RuntimeError('boom')

    monkeypatch.setitem(probes.PROBES, 'HTTP', broken)
    server_id = add_server(**all_enabled())

    run_checks(app, snapshot(app, server_id), settings)

    server = load_server(server_id)
    assert server.http_result == 'Failed (boom)'
    assert server.smtp_result == 'SMTP ok'


def test_check_past_deadline_is_recorded_as_timed_out(app, add_server, load_server, fake_probes, monkeypatch):
    release = threading.Event()

    def stuck(record, **kwargs):
        release.wait(10)
        return 'too late'

    monkeypatch.setitem(probes.PROBES, 'POP3', stuck)
    server_id = add_server(**all_enabled())
    settings = CheckSettings(probe_timeout=1, probe_deadline=1)

    try:
        record = run_checks(app, snapshot(app, server_id), settings)
    finally:
        release.set()

    assert record.results['POP3'] == CHECK_TIMED_OUT
    server = load_server(server_id)
    assert server.pop3_result == CHECK_TIMED_OUT
    assert server.https_result == 'HTTPS ok'


def test_early_persist_writes_previous_results(app, add_server, load_server, fake_probes):
    server_id = add_server(**all_enabled(http_result='HTTP/1.1 200 OK'))
    settings = CheckSettings(early_persist=True)

    record = run_checks(app, snapshot(app, server_id), settings)

    assert record.results['HTTP'] == 'HTTP ok'
    server = load_server(server_id)
    assert server.http_result == 'HTTP/1.1 200 OK'
    assert server.smtp_result is None


def test_persist_writes_only_result_columns(app, add_server, load_server):
    server_id = add_server(hostname='keep.example.test', last_update=123, enable_http=True)
    record = snapshot(app, server_id)
    record.results['HTTP'] = 'HTTP/1.1 503 Service Unavailable'
    record.hostname = 'changed.example.test'

    with app.app_context():
        persist_results(record)

    server = load_server(server_id)
    assert server.http_result == 'HTTP/1.1 503 Service Unavailable'
    assert server.hostname == 'keep.example.test'
    assert server.last_update == 123


def test_persist_failure_raises(app, add_server):
    record = snapshot(app, add_server())

    with app.app_context():
        db.drop_all()
        with pytest.raises(PersistError) as excinfo:
            persist_results(record)

    assert excinfo.value.server_id == record.id


def test_checks_run_on_daemon_threads(app, settings, add_server, monkeypatch):
    daemons = []

    def recording(record, **kwargs):
        daemons.append(threading.current_thread().daemon)
        return 'ok'

    for name in probes.PROBES:
        monkeypatch.setitem(probes.PROBES, name, recording)
    server_id = add_server(**all_enabled())

    run_checks(app, snapshot(app, server_id), settings)

    assert daemons == [True] * 5
