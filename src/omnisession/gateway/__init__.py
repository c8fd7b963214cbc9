"""Persistence gateways for sessions and messages."""

from omnisession.gateway.base import PersistenceGateway
from omnisession.gateway.jsonl import JsonlGateway
from omnisession.gateway.memory import InMemoryGateway
from omnisession.gateway.sqlite import SQLiteGateway

__all__ = [
    "PersistenceGateway",
    "SQLiteGateway",
    "JsonlGateway",
    "InMemoryGateway",
]
