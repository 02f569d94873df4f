# functions/probes.py
"""Protocol probes.

Each probe takes a ServerRecord and returns the text to store for that
protocol. Probes never raise: transport errors become failure strings.
"""
import http.client
import logging
import os
import socket

import requests
from ping3 import ping
from urllib3.exceptions import ProtocolError

logger = logging.getLogger(__name__)

HTTPS_CONNECT_TIMEOUT = 3
SMTP_TIMEOUT = 10
DEFAULT_TIMEOUT = 10

UNABLE_TO_OPEN_PORT = "Unable to open port"
NO_RESPONSE = "No response received from server"
UNABLE_TO_OPEN_SMTP = "Unable to open SMTP connection"
UNABLE_TO_OPEN_POP3 = "Unable to open POP3 Connection"
PING_REQUIRES_ROOT = "Ping requires root"
NO_PING_REPLY = "No reply received from server"

GET_REQUEST = b"GET / HTTP/1.0\r\n\r\n"


def _extra(record, service, port):
    return {'server': record.hostname or record.address, 'service': service, 'port': port}


def is_valid_http_response(response):
    """A status line is valid when the server answered 200 OK."""
    return "200 OK" in response


def _status_line(resp):
    version = getattr(resp.raw, 'version', None) or 11
    return f"HTTP/{version // 10}.{version % 10} {resp.status_code} {resp.reason or ''}".strip()


def _find_cause(error, kind):
    """Search an exception, its args and its chain for an instance of kind."""
    seen = set()
    pending = [error]
    while pending:
        exc = pending.pop()
        if exc is None or id(exc) in seen:
            continue
        seen.add(id(exc))
        if isinstance(exc, kind):
            return exc
        pending.extend(arg for arg in exc.args if isinstance(arg, BaseException))
        pending.extend((exc.__cause__, exc.__context__))
    return None


def _connection_error_result(error):
    # A ProtocolError means the connection was open when the exchange failed
    if _find_cause(error, ProtocolError) is None:
        return UNABLE_TO_OPEN_PORT
    bad_line = _find_cause(error, http.client.BadStatusLine)
    if bad_line is None or isinstance(bad_line, http.client.RemoteDisconnected):
        return NO_RESPONSE
    # Not an HTTP status line; keep what the server actually sent
    return bad_line.line.strip() or NO_RESPONSE


def _fetch_status_line(url, service, port, timeout, record):
    extra = _extra(record, service, port)
    try:
        resp = requests.get(url, timeout=timeout, stream=True, allow_redirects=False)
    except requests.exceptions.ConnectionError as e:
        result = _connection_error_result(e)
        if result in (UNABLE_TO_OPEN_PORT, NO_RESPONSE):
            logger.error(f"{result}: {e}", extra=extra)
            return result
    except requests.exceptions.RequestException as e:
        logger.error(f"{NO_RESPONSE}: {e}", extra=extra)
        return NO_RESPONSE
    else:
        try:
            result = _status_line(resp)
        finally:
            resp.close()

    if is_valid_http_response(result):
        logger.info(f"{service} Check Ok. Response: {result}", extra=extra)
    else:
        logger.error(f"Returned invalid {service} response: '{result}'", extra=extra)
    return result


def check_http(record, timeout=DEFAULT_TIMEOUT):
    """GET / on port 80 of the server's address and return the status line."""
    host = f"[{record.address}]" if ':' in record.address else record.address
    return _fetch_status_line(f"http://{host}:80/", 'HTTP', 80, timeout, record)


def check_https(record, timeout=DEFAULT_TIMEOUT):
    """Same as check_http over TLS, validated against the server's hostname."""
    return _fetch_status_line(
        f"https://{record.hostname}:443/", 'HTTPS', 443, (HTTPS_CONNECT_TIMEOUT, timeout), record
    )


def _check_line_service(record, service, port, timeout, open_failure, payload=None):
    extra = _extra(record, service, port)
    try:
        conn = socket.create_connection((record.address, port), timeout=timeout)
    except OSError as e:
        logger.error(f"{open_failure}: {e}", extra=extra)
        return open_failure

    try:
        with conn:
            if payload:
                conn.sendall(payload)
            with conn.makefile('rb') as reader:
                line = reader.readline()
    except OSError as e:
        logger.error(f"{NO_RESPONSE}: {e}", extra=extra)
        return NO_RESPONSE

    if not line:
        logger.error(NO_RESPONSE, extra=extra)
        return NO_RESPONSE

    result = line.decode('utf-8', errors='replace').strip()
    logger.info(f"{service} Check OK. Response: {result}", extra=extra)
    return result


def check_smtp(record, timeout=SMTP_TIMEOUT):
    """Capture the SMTP greeting banner. No HELO is sent."""
    return _check_line_service(record, 'SMTP', record.smtp_port, timeout, UNABLE_TO_OPEN_SMTP)


def check_pop3(record, timeout=DEFAULT_TIMEOUT):
    # Sends an HTTP request, as deployed; the first line back is recorded as is
    return _check_line_service(record, 'POP3', 110, timeout, UNABLE_TO_OPEN_POP3, payload=GET_REQUEST)


def has_ping_privilege():
    geteuid = getattr(os, 'geteuid', None)
    return geteuid is None or geteuid() == 0


def check_ping(record, timeout=DEFAULT_TIMEOUT):
    """Send one ICMP echo and report the round trip time."""
    extra = _extra(record, 'PING', 0)
    if not has_ping_privilege():
        logger.error(PING_REQUIRES_ROOT, extra=extra)
        return PING_REQUIRES_ROOT

    try:
        rtt = ping(record.address, timeout=timeout, unit='ms')
    except Exception as e:
        logger.error(f"Ping failed: {e}", extra=extra)
        return f"Failed ({e})"

    if rtt is None or rtt is False:
        logger.error("Ping failed", extra=extra)
        return NO_PING_REPLY

    logger.info("Ping successful", extra=extra)
    return f"IP Addr: {record.address} receive, RTT: {rtt:.3f}ms"


PROBES = {
    'HTTP': check_http,
    'SMTP': check_smtp,
    'POP3': check_pop3,
    'HTTPS': check_https,
    'PING': check_ping,
}


def run_probe(protocol, record, timeout):
    """Run one protocol probe, or return None when it is disabled for the server."""
    if not record.is_enabled(protocol):
        return None
    if protocol == 'SMTP':
        # SMTP keeps its fixed 10 second timeout
        return PROBES[protocol](record)
    return PROBES[protocol](record, timeout=timeout)
