# tests/conftest.py
import base64
import hashlib
import json
from typing import Dict, List, Tuple

import httpx
import pytest

GATEWAY = "https://gw.test/ipfs"
BACKUP_GATEWAY = "https://backup.test/ipfs"


def cid_for(data: bytes) -> str:
    """CIDv1 (raw codec, sha2-256) in base32, built by hand."""
    raw = bytes([0x01, 0x55, 0x12, 0x20]) + hashlib.sha256(data).digest()
    return "b" + base64.b32encode(raw).decode("ascii").lower().rstrip("=")


def encode_data_value(obj) -> str:
    return base64.b64encode(json.dumps(obj).encode("utf-8")).decode("ascii")


class FakeGateway:
    """In-memory IPFS gateway behind httpx.MockTransport; records every request."""

    def __init__(self):
        self.documents: Dict[str, Tuple[int, bytes, str]] = {}
        self.head_statuses: Dict[str, List[int]] = {}
        self.down_hosts = set()
        self.calls: List[Tuple[str, str]] = []

    def add(self, cid: str, content: bytes, content_type: str = "application/octet-stream", status: int = 200):
        self.documents[cid] = (status, content, content_type)

    def add_json(self, cid: str, obj, content_type: str = "application/json"):
        self.add(cid, json.dumps(obj).encode("utf-8"), content_type)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, str(request.url)))
        cid = request.url.path.rstrip("/").rsplit("/", 1)[-1]
        if request.url.host in self.down_hosts:
            return httpx.Response(502)
        if request.method == "HEAD":
            queue = self.head_statuses.get(cid)
            if queue:
                return httpx.Response(queue.pop(0))
            return httpx.Response(200 if cid in self.documents else 404)
        entry = self.documents.get(cid)
        if entry is None:
            return httpx.Response(404)
        status, content, content_type = entry
        return httpx.Response(status, content=content, headers={"content-type": content_type})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, method: str = "GET", cid: str = "") -> int:
        return sum(1 for m, url in self.calls if m == method and url.endswith(cid))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_cid():
    return lambda label: cid_for(label.encode("utf-8"))


@pytest.fixture
def attestation_doc():
    def build(**overrides):
        doc = {
            "week": 12,
            "reserveAmount": "1,250.50",
            "fileCid": cid_for(b"evidence.pdf"),
            "issuer": "Custodian Trust Ltd",
            "timestamp": "2026-03-20T10:00:00Z",
        }
        doc.update(overrides)
        return doc
    return build


@pytest.fixture
def b64json():
    return encode_data_value
