# models/server.py
from collections import namedtuple
from dataclasses import dataclass, field

from vbms.extensions import db

DEFAULT_SMTP_PORT = 25

Protocol = namedtuple('Protocol', ['name', 'enabled_attr', 'result_attr', 'port'])

# One entry per supported check. port is None where it comes from the row.
PROTOCOLS = (
    Protocol('HTTP', 'enable_http', 'http_result', 80),
    Protocol('SMTP', 'enable_smtp', 'smtp_result', None),
    Protocol('POP3', 'enable_pop3', 'pop3_result', 110),
    Protocol('HTTPS', 'enable_https', 'https_result', 443),
    Protocol('PING', 'enable_ping', 'ping_result', 0),
)


class Server(db.Model):
    __tablename__ = 'servers'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    hostname = db.Column(db.Text)
    ip = db.Column(db.Text)
    enable_http = db.Column('enablehttp', db.Boolean, default=False, server_default='0')
    http_result = db.Column('httpresult', db.Text)
    # Column name typo is part of the deployed schema
    enable_smtp = db.Column('enablestmp', db.Boolean, default=False, server_default='0')
    smtp_result = db.Column('smtpresult', db.Text)
    smtp_port = db.Column('smtpport', db.Integer, default=DEFAULT_SMTP_PORT, server_default='25')
    enable_pop3 = db.Column('enablepop3', db.Boolean, default=False, server_default='0')
    pop3_result = db.Column('pop3result', db.Text)
    enable_https = db.Column('enablehttps', db.Boolean, default=False, server_default='0')
    https_result = db.Column('httpsresult', db.Text)
    enable_ping = db.Column('enableping', db.Boolean, default=False, server_default='0')
    ping_result = db.Column('pingresult', db.Text)
    # Claim marker set when the row is queued, not when checks finish; NULL until first claimed
    last_update = db.Column('lastupdate', db.Integer)

    def snapshot(self):
        """Copy the row into a ServerRecord that is safe to hand to another thread."""
        return ServerRecord(
            id=self.id,
            hostname=self.hostname or '',
            address=self.ip or '',
            smtp_port=self.smtp_port or DEFAULT_SMTP_PORT,
            enabled={p.name: bool(getattr(self, p.enabled_attr)) for p in PROTOCOLS},
            results={p.name: getattr(self, p.result_attr) for p in PROTOCOLS},
        )

    def __repr__(self):
        return f"<Server {self.id} {self.hostname}>"


@dataclass
class ServerRecord:
    id: int
    hostname: str
    address: str
    smtp_port: int = DEFAULT_SMTP_PORT
    enabled: dict = field(default_factory=dict)
    results: dict = field(default_factory=dict)

    def is_enabled(self, protocol):
        return self.enabled.get(protocol, False)

    def port_for(self, protocol):
        for p in PROTOCOLS:
            if p.name == protocol:
                return self.smtp_port if p.port is None else p.port
        raise KeyError(protocol)

    def result_columns(self):
        """Map ORM attribute names to the current in-memory results."""
        return {p.result_attr: self.results.get(p.name) for p in PROTOCOLS}
