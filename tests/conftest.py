"""
Pytest fixtures for the stemc tests.
"""

import pytest

import stemc
from app import app as flask_app


@pytest.fixture
def parse_source():
    """Source text -> list of statement ASTs."""
    def _parse(code, filename='<input>'):
        return stemc.parse(stemc.tokenize(code, filename))
    return _parse


@pytest.fixture
def sample_program():
    return "put 2+3*4; put (2+3)*4;"


@pytest.fixture
def client():
    flask_app.config.update(TESTING=True)
    with flask_app.test_client() as c:
        yield c
