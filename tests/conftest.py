"""Shared fixtures: RSA service account, settings, and an in-memory store.

The fake store speaks the document store's REST dialect (tagged-value
documents, ``:runQuery``, PATCH with ``updateMask.fieldPaths``) and the
token endpoint's form-encoded bearer grant, behind ``httpx.MockTransport``.
"""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from autodelivery.config import Settings
from autodelivery.serve import create_app
from autodelivery.store.codec import decode_fields, decode_value, encode_fields

TOKEN_URL = "https://oauth2.test/token"
DOCS_BASE = "https://firestore.test/v1/projects/demo/databases/(default)/documents"
PAYMENT_BASE = "https://pay.test/hl/v1"
CLIENT_EMAIL = "reconciler@demo.iam.gserviceaccount.com"


class FakeStore:
    """In-memory documents root plus token endpoint and payment provider."""

    def __init__(self) -> None:
        self.docs: dict[tuple[str, str], dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.writes: list[tuple[str, str, list[str]]] = []
        self.assertions: list[str] = []
        self.token_response: dict[str, Any] = {"access_token": "test-token", "expires_in": 3599}
        self.token_status = 200
        self.reject_ordered_queries = False
        self.fail_writes_to: set[str] = set()
        self.payment_response: tuple[int, dict[str, Any]] = (200, {"statusCode": 200, "data": {"id": "inv_1"}})
        self.payment_requests: list[tuple[str, dict[str, Any]]] = []

    # ── seeding / inspection ─────────────────────────────────

    def put(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        create_time: str = "2024-01-01T00:00:00Z",
    ) -> None:
        self.docs[(collection, doc_id)] = {
            "name": f"projects/demo/databases/(default)/documents/{collection}/{doc_id}",
            "fields": encode_fields(fields),
            "createTime": create_time,
            "updateTime": create_time,
        }

    def fields(self, collection: str, doc_id: str) -> dict[str, Any]:
        return decode_fields(self.docs[(collection, doc_id)]["fields"])

    def collection(self, collection: str) -> dict[str, dict[str, Any]]:
        return {
            doc_id: decode_fields(doc["fields"])
            for (coll, doc_id), doc in self.docs.items()
            if coll == collection
        }

    def writes_to(self, collection: str) -> list[tuple[str, str, list[str]]]:
        return [w for w in self.writes if w[0] == collection]

    # ── transport ────────────────────────────────────────────

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "oauth2.test":
            return self._token(request)
        if host == "pay.test":
            return self._payment(request)
        rest = request.url.path.split("/documents", 1)[1]
        if rest == ":runQuery":
            return self._run_query(json.loads(request.content))
        _, collection, doc_id = rest.split("/", 2)
        if request.method == "GET":
            doc = self.docs.get((collection, doc_id))
            if doc is None:
                return httpx.Response(404, json={"error": {"code": 404, "status": "NOT_FOUND"}})
            return httpx.Response(200, json=doc)
        if request.method == "PATCH":
            return self._patch(collection, doc_id, request)
        return httpx.Response(405)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["urn:ietf:params:oauth:grant-type:jwt-bearer"]
        self.assertions.append(form["assertion"][0])
        return httpx.Response(self.token_status, json=self.token_response)

    def _payment(self, request: httpx.Request) -> httpx.Response:
        self.payment_requests.append((request.url.path, json.loads(request.content)))
        status, body = self.payment_response
        return httpx.Response(status, json=body)

    def _run_query(self, body: dict[str, Any]) -> httpx.Response:
        query = body["structuredQuery"]
        collection = query["from"][0]["collectionId"]
        if query.get("orderBy") and self.reject_ordered_queries:
            return httpx.Response(400, json={"error": {"message": "The query requires an index"}})

        docs = [doc for (coll, _), doc in self.docs.items() if coll == collection]
        where = query.get("where", {}).get("fieldFilter")
        if where:
            path = where["field"]["fieldPath"]
            wanted = decode_value(where["value"])
            docs = [d for d in docs if decode_value(d["fields"].get(path)) == wanted]
        for order in reversed(query.get("orderBy", [])):
            path = order["field"]["fieldPath"]
            docs.sort(
                key=lambda d: str(decode_value(d["fields"].get(path)) or ""),
                reverse=order["direction"] == "DESCENDING",
            )
        if "limit" in query:
            docs = docs[: query["limit"]]
        if not docs:
            return httpx.Response(200, json=[{"readTime": "2024-01-01T00:00:00Z"}])
        return httpx.Response(200, json=[{"document": d, "readTime": "2024-01-01T00:00:00Z"} for d in docs])

    def _patch(self, collection: str, doc_id: str, request: httpx.Request) -> httpx.Response:
        if collection in self.fail_writes_to:
            return httpx.Response(500, json={"error": {"message": "backend unavailable"}})
        mask = request.url.params.get_list("updateMask.fieldPaths")
        incoming = json.loads(request.content)["fields"]
        doc = self.docs.get((collection, doc_id))
        if doc is None or not mask:
            self.put(collection, doc_id, {})
            doc = self.docs[(collection, doc_id)]
        if mask:
            for path in mask:
                if path in incoming:
                    doc["fields"][path] = incoming[path]
                else:
                    doc["fields"].pop(path, None)
        else:
            doc["fields"] = incoming
        self.writes.append((collection, doc_id, mask))
        return httpx.Response(200, json=doc)


@pytest.fixture(scope="session")
def private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture(scope="session")
def public_key_pem(private_key_pem: str) -> str:
    key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


@pytest.fixture
def service_account_json(private_key_pem: str) -> str:
    return json.dumps(
        {
            "type": "service_account",
            "project_id": "demo",
            "client_email": CLIENT_EMAIL,
            "private_key": private_key_pem,
        }
    )


@pytest.fixture
def settings(service_account_json: str) -> Settings:
    return Settings(
        _env_file=None,
        service_account=service_account_json,
        firestore_base_url=DOCS_BASE,
        token_url=TOKEN_URL,
        payment_base_url=PAYMENT_BASE,
        payment_api_key="pay-key",
    )


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def transport(fake_store: FakeStore) -> httpx.MockTransport:
    return httpx.MockTransport(fake_store.handle)


@pytest.fixture
def http(transport: httpx.MockTransport):
    return httpx.AsyncClient(transport=transport)


@pytest.fixture
def client(settings: Settings, transport: httpx.MockTransport):
    app = create_app(settings, transport=transport)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
