"""End-to-end drive scenario against the in-memory drive service.

Exercises the full stack (session, retry orchestrator, node cache, path
resolver and drive client) with only the HTTP transport replaced.
"""

import random
from pathlib import Path

import pytest
from conftest import FakeDrive, make_drive_client

from cloud_drive.errors import NodeExistsError

MIB = 1024 * 1024


def test_create_upload_resolve_download(tmp_path: Path) -> None:
    drive = FakeDrive()
    client = make_drive_client(drive, f"sqlite:///{tmp_path / 'cache.sqlite'}").connect()
    try:
        folder = client.ensure_path("/a/b")

        small = b"\x01\x02\x03\x04"
        large = random.Random(8).randbytes(MIB)
        small_id = client.upload("small", small, parent=folder)
        large_id = client.upload("large", large, parent=folder)

        assert client.resolve_path("a/b/small") == small_id
        assert client.resolve_path("/a/b/large") == large_id
        assert client.download(small_id) == small
        assert client.download(large_id) == large

        with pytest.raises(NodeExistsError):
            client.upload("small", b"different content", parent=folder)

        assert client.download(small_id) == small
        assert sorted(client.ls(folder)) == sorted([small_id, large_id])
    finally:
        client.close()


def test_cache_survives_reopening_the_client(tmp_path: Path) -> None:
    drive = FakeDrive()
    cache_url = f"sqlite:///{tmp_path / 'cache.sqlite'}"

    first = make_drive_client(drive, cache_url)
    folder = first.ensure_path("/a/b")
    first.close()

    second = make_drive_client(drive, cache_url)
    try:
        before = drive.count("GET", "find_child")
        assert second.resolve_path("/a/b") == folder
        assert drive.count("GET", "find_child") == before
        assert drive.count("POST", "mkdir") == 2
    finally:
        second.close()


def test_scenario_survives_token_expiry_and_flaky_network(tmp_path: Path) -> None:
    drive = FakeDrive()
    client = make_drive_client(drive, f"sqlite:///{tmp_path / 'cache.sqlite'}").connect()
    try:
        folder = client.ensure_path("/a/b")
        drive.expire_tokens()
        drive.transport_failures = 2

        node = client.upload("small", b"abcd", parent=folder)

        assert client.download(node) == b"abcd"
        assert drive.count("POST", "token") == 1
    finally:
        client.close()
