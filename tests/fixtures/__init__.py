"""Test fixtures for pg-snapshot-dumper tests"""

from .fake_postgres import FakeApi, FakeConnector, FakeReplicationApi, FakeServer, wait_until

__all__ = [
    "FakeApi",
    "FakeConnector",
    "FakeReplicationApi",
    "FakeServer",
    "wait_until",
]
