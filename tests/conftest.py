"""Pytest configuration and shared fixtures."""
import httpx
import pytest

from tikiti.infra import timings
from tikiti.infra.sql import make_database
from tikiti.model.db import create_schema
from tikiti.model.tokens._memory import TokenCache
from tikiti.mpesa import MpesaGateway

from .factories import DARAJA_CONFIG, FakeDaraja


@pytest.fixture(autouse=True)
def clear_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
async def database(tmp_path):
    database = make_database(f"sqlite:///{tmp_path / 'tikiti.db'}")
    async with database.engine.begin() as conn:
        await create_schema(conn)
    yield database
    await database.dispose()


@pytest.fixture
def db_factory(database):
    return database.open


@pytest.fixture
async def db(db_factory):
    async with db_factory() as session:
        yield session


@pytest.fixture
def daraja():
    return FakeDaraja()


@pytest.fixture
async def gateway(daraja):
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(daraja.handler)
    ) as http:
        yield MpesaGateway(http, DARAJA_CONFIG, tokens=TokenCache())
