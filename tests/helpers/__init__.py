"""Test helpers package."""

from tests.helpers.fakes import (
    FakeBackend,
    FakeHygiene,
    FakeVcs,
    RecordingSleep,
    make_item,
    wait_until,
)

__all__ = [
    "FakeBackend",
    "FakeHygiene",
    "FakeVcs",
    "RecordingSleep",
    "make_item",
    "wait_until",
]
