"""Shared test fixtures for pg-snapshot-dumper tests"""

import pytest

from tests.common import TEST_COLUMNS, TEST_TABLE_NAME, make_rows, make_settings
from tests.fixtures import FakeConnector, FakeServer


@pytest.fixture
def source_server():
    server = FakeServer('source')
    server.create_table(TEST_TABLE_NAME, TEST_COLUMNS, rows=make_rows(10000))
    return server


@pytest.fixture
def destination_server():
    server = FakeServer('destination')
    server.create_table(TEST_TABLE_NAME, TEST_COLUMNS)
    return server


@pytest.fixture
def source_connector(source_server):
    return FakeConnector(source_server)


@pytest.fixture
def destination_connector(destination_server):
    return FakeConnector(destination_server)


@pytest.fixture
def settings():
    return make_settings()
