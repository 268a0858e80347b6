"""Test helpers for prophet-trader test suite"""

from tests.helpers.fakes import FakeGateway

__all__ = [
    "FakeGateway",
]
