"""Pytest configuration — adds src/ to sys.path and provides an in-memory drive service."""

import hashlib
import itertools
import json
import os
import random
import sys
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

import pytest

# Add src/ to Python path so tests can import from cloud_drive
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from cloud_drive.drive.client import DriveClient  # noqa: E402
from cloud_drive.errors import TransportError  # noqa: E402
from cloud_drive.session.interactive import ConsoleInteractiveAuth  # noqa: E402
from cloud_drive.session.manager import SessionManager  # noqa: E402
from cloud_drive.session.models import SecurityProfile  # noqa: E402
from cloud_drive.storage.node_cache import NodeCache  # noqa: E402
from cloud_drive.transport.rest import RestRequest  # noqa: E402
from cloud_drive.transport.retry import RetryOrchestrator  # noqa: E402

TOKEN_URL = "https://api.fake-drive.test/auth/o2/token"
ENDPOINT_URL = "https://drive.fake-drive.test/drive/v1/account/endpoint"
METADATA_URL = "https://cdws.fake-drive.test/drive/v1/"
CONTENT_URL = "https://content.fake-drive.test/cdproxy/"
ROOT_ID = "root-node"

EXPIRED = (400, json.dumps({"code": "401", "message": "Token has expired"}).encode())


@dataclass
class FakeNode:
    id: str
    name: str
    kind: str
    parent: str | None
    content: bytes = b""
    trashed: bool = False


@dataclass
class FakeDrive:
    """In-memory stand-in for the drive service, usable as a Transport.

    Folders and files live in ``nodes``; every request is recorded in
    ``requests`` as (method, route) with ids kept verbatim.
    """

    page_size: int = 100
    nodes: dict[str, FakeNode] = field(default_factory=dict)
    requests: list[tuple[str, str]] = field(default_factory=list)
    valid_tokens: set[str] = field(default_factory=set)
    refresh_tokens: set[str] = field(default_factory=lambda: {"refresh-0"})
    transport_failures: int = 0
    server_failures: int = 0
    corrupt_uploads: bool = False
    _ids: Any = field(default_factory=lambda: itertools.count(1))

    def __post_init__(self) -> None:
        self.nodes[ROOT_ID] = FakeNode(ROOT_ID, "", "FOLDER", None)
        self.valid_tokens.add("access-0")

    # -- helpers for tests ------------------------------------------------

    def expire_tokens(self) -> None:
        self.valid_tokens.clear()

    def count(self, method: str, route: str) -> int:
        return sum(1 for m, r in self.requests if m == method and r == route)

    def children_of(self, parent: str) -> list[FakeNode]:
        return [n for n in self.nodes.values() if n.parent == parent and not n.trashed]

    def add_folder(self, parent: str, name: str) -> str:
        node_id = f"node-{next(self._ids)}"
        self.nodes[node_id] = FakeNode(node_id, name, "FOLDER", parent)
        return node_id

    # -- Transport --------------------------------------------------------

    def send(self, request: RestRequest) -> tuple[int, bytes]:
        url = urlparse(request.full_url)
        query = {k: v[0] for k, v in parse_qs(url.query).items()}
        base = f"{url.scheme}://{url.netloc}"
        full_path = url.path

        if self.transport_failures:
            self.transport_failures -= 1
            raise TransportError("connection reset by peer")
        if self.server_failures:
            self.server_failures -= 1
            return 503, b'{"message":"Service Unavailable"}'

        if f"{base}{full_path}" == TOKEN_URL:
            self.requests.append((request.method, "token"))
            return self._token(request)

        if request.bearer_token not in self.valid_tokens:
            self.requests.append((request.method, "rejected"))
            return EXPIRED

        if f"{base}{full_path}" == ENDPOINT_URL:
            self.requests.append((request.method, "endpoint"))
            body = {"contentUrl": CONTENT_URL, "metadataUrl": METADATA_URL}
            return 200, json.dumps(body).encode()

        for prefix, handler in ((METADATA_URL, self._metadata), (CONTENT_URL, self._content)):
            if f"{base}{full_path}".startswith(prefix):
                rest = f"{base}{full_path}"[len(prefix) :]
                parts = [unquote(p) for p in rest.split("/") if p]
                return handler(request, parts, query)
        return 404, b'{"message":"no such route"}'

    def _token(self, request: RestRequest) -> tuple[int, bytes]:
        form = {k: v[0] for k, v in parse_qs((request.body or b"").decode()).items()}
        if form.get("grant_type") == "refresh_token":
            if form.get("refresh_token") not in self.refresh_tokens:
                return 400, b'{"error":"invalid_grant"}'
        elif form.get("grant_type") != "authorization_code" or not form.get("code"):
            return 400, b'{"error":"invalid_request"}'
        n = next(self._ids)
        access, refresh = f"access-{n}", f"refresh-{n}"
        self.valid_tokens.add(access)
        self.refresh_tokens = {refresh}
        body = {
            "access_token": access,
            "refresh_token": refresh,
            "token_type": "bearer",
            "expires_in": 3600,
        }
        return 200, json.dumps(body).encode()

    def _metadata(
        self, request: RestRequest, parts: list[str], query: dict[str, str]
    ) -> tuple[int, bytes]:
        if request.method == "GET" and parts == ["nodes"]:
            self.requests.append(("GET", "root"))
            return 200, json.dumps({"count": 1, "data": [{"id": ROOT_ID}]}).encode()

        if request.method == "GET" and len(parts) == 3 and parts[0] == "nodes":
            parent = parts[1]
            children = self.children_of(parent)
            if "filters" in query:
                self.requests.append(("GET", "find_child"))
                name = _unescape_filter(query["filters"].split(":", 1)[1])
                matches = [{"id": n.id, "name": n.name} for n in children if n.name == name]
                return 200, json.dumps({"count": len(matches), "data": matches}).encode()
            self.requests.append(("GET", "ls"))
            start = int(query.get("startToken", "0"))
            page = children[start : start + self.page_size]
            body: dict[str, Any] = {"count": len(children), "data": [{"id": n.id} for n in page]}
            if start + self.page_size < len(children):
                body["nextToken"] = str(start + self.page_size)
            return 200, json.dumps(body).encode()

        if request.method == "POST" and parts == ["nodes"]:
            self.requests.append(("POST", "mkdir"))
            meta = json.loads(request.body or b"{}")
            parent = meta["parents"][0]
            for node in self.children_of(parent):
                if node.name == meta["name"]:
                    conflict = {"code": "NAME_ALREADY_EXISTS", "info": {"nodeId": node.id}}
                    return 409, json.dumps(conflict).encode()
            node_id = self.add_folder(parent, meta["name"])
            return 201, json.dumps({"id": node_id, "name": meta["name"]}).encode()

        if request.method == "PUT" and len(parts) == 2 and parts[0] == "trash":
            self.requests.append(("PUT", "trash"))
            node = self.nodes.get(parts[1])
            if node is None:
                return 404, b'{"message":"not found"}'
            node.trashed = True
            return 200, json.dumps({"id": node.id, "status": "TRASH"}).encode()

        return 404, b'{"message":"no such route"}'

    def _content(
        self, request: RestRequest, parts: list[str], query: dict[str, str]
    ) -> tuple[int, bytes]:
        if request.method == "POST" and parts == ["nodes"]:
            self.requests.append(("POST", "upload"))
            content_type = dict(request.headers)["Content-Type"]
            fields = _parse_multipart(request.body or b"", content_type.split("boundary=")[1])
            meta = json.loads(fields["metadata"])
            parent = meta["parents"][0]
            if any(n.name == meta["name"] for n in self.children_of(parent)):
                return 409, b'{"code":"NAME_ALREADY_EXISTS","message":"Node exists"}'
            node_id = f"node-{next(self._ids)}"
            data = fields["content"]
            self.nodes[node_id] = FakeNode(node_id, meta["name"], "FILE", parent, data)
            md5 = hashlib.md5(data).hexdigest()
            if self.corrupt_uploads:
                md5 = hashlib.md5(data + b"!").hexdigest()
            body = {"id": node_id, "contentProperties": {"md5": md5.upper(), "size": len(data)}}
            return 201, json.dumps(body).encode()

        if request.method == "GET" and len(parts) == 3 and parts[2] == "content":
            self.requests.append(("GET", "download"))
            node = self.nodes.get(parts[1])
            if node is None or node.trashed:
                return 404, b'{"message":"not found"}'
            return 200, node.content

        return 404, b'{"message":"no such route"}'


def _unescape_filter(value: str) -> str:
    out = []
    chars = iter(value)
    for ch in chars:
        out.append(next(chars, "") if ch == "\\" else ch)
    return "".join(out)


def _parse_multipart(body: bytes, boundary: str) -> dict[str, bytes]:
    fields: dict[str, bytes] = {}
    for chunk in body.split(f"--{boundary}".encode())[1:-1]:
        headers, _, data = chunk[2:].partition(b"\r\n\r\n")
        name = headers.split(b'name="', 1)[1].split(b'"', 1)[0].decode()
        fields[name] = data[:-2]
    return fields


class InMemoryProfileStore:
    def __init__(self, **records: dict[str, Any]) -> None:
        self.records: dict[str, dict[str, Any]] = dict(records)

    def load(self, key: str) -> dict[str, Any] | None:
        return self.records.get(key)

    def save(self, key: str, record: dict[str, Any]) -> None:
        self.records[key] = record


def make_drive_client(
    drive: FakeDrive,
    cache_url: str = "sqlite://",
    store: InMemoryProfileStore | None = None,
) -> DriveClient:
    """Wire a DriveClient to ``drive`` with an already-authorized profile."""
    if store is None:
        store = InMemoryProfileStore(
            authorization={
                "access_token": "access-0",
                "refresh_token": "refresh-0",
                "token_type": "bearer",
                "issued_at": 0,
            }
        )
    orchestrator = RetryOrchestrator(drive, sleep=lambda _: None, rng=random.Random(1234))
    session = SessionManager(
        profile=SecurityProfile(client_id="client-1", client_secret="secret-1"),
        store=store,
        orchestrator=orchestrator,
        interactive=ConsoleInteractiveAuth(),
        authorize_url="https://www.fake-drive.test/ap/oa",
        token_url=TOKEN_URL,
        endpoint_url=ENDPOINT_URL,
        redirect_uri="http://localhost:26619/",
        scope="clouddrive:read_all clouddrive:write",
    )
    orchestrator.session = session
    return DriveClient(session=session, orchestrator=orchestrator, cache=NodeCache(cache_url))


@pytest.fixture
def fake_drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def drive_client(fake_drive: FakeDrive, tmp_path: Path) -> Iterator[DriveClient]:
    client = make_drive_client(fake_drive, f"sqlite:///{tmp_path / 'cache.sqlite'}")
    yield client
    client.close()
