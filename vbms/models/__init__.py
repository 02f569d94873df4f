# models/__init__.py
from .server import Server, ServerRecord, Protocol, PROTOCOLS
