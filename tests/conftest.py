import json
import os
import re
import sys
from contextlib import contextmanager

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "lambda"))
import runtime  # noqa: E402

NOW = 1_700_000_000

KEY_NAMES = {
    "curator_users": ("user_id",),
    "curator_playlists": ("user_id", "spotify_id"),
    "curator_generations": ("id",),
    "curator_chat_messages": ("user_id", "sort_key"),
}

_ASSIGNMENT = re.compile(r"(#?\w+) = (if_not_exists\(\w+, (:\w+)\)|:\w+)")


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self.headers = headers or {}
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    """Routes requests to ``responder(method, url, kwargs)`` and records every call."""

    def __init__(self, responder=None):
        self.responder = responder or (lambda method, url, kwargs: FakeResponse(200, {}))
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        return self.responder(method, url, kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def urls(self, method=None):
        return [c["url"] for c in self.calls if method is None or c["method"] == method]


class FakeTable:
    def __init__(self, key_names=("id",)):
        self.key_names = key_names
        self.items = {}
        self.update_calls = []
        self.put_calls = []
        self.deleted = []

    def _key(self, key):
        return tuple(key[name] for name in self.key_names)

    def get_item(self, Key):
        item = self.items.get(self._key(Key))
        return {"Item": dict(item)} if item else {}

    def put_item(self, Item):
        self.put_calls.append(Item)
        self.items[self._key(Item)] = dict(Item)

    def update_item(self, Key, UpdateExpression, ExpressionAttributeValues, **kwargs):
        self.update_calls.append(
            {"Key": Key, "UpdateExpression": UpdateExpression,
             "ExpressionAttributeValues": ExpressionAttributeValues, **kwargs}
        )
        names = kwargs.get("ExpressionAttributeNames", {})
        item = self.items.setdefault(self._key(Key), dict(Key))
        for attr, expr, default_ref in _ASSIGNMENT.findall(UpdateExpression):
            attr = names.get(attr, attr)
            if default_ref:
                item.setdefault(attr, ExpressionAttributeValues[default_ref])
            else:
                item[attr] = ExpressionAttributeValues[expr]

    def query(self, KeyConditionExpression, ScanIndexForward=True, Limit=None, **kwargs):
        key_attr, value = KeyConditionExpression.get_expression()["values"]
        matched = [
            dict(item) for item in self.items.values() if item.get(key_attr.name) == value
        ]
        if len(self.key_names) > 1:
            matched.sort(key=lambda item: item[self.key_names[1]], reverse=not ScanIndexForward)
        if Limit is not None:
            matched = matched[:Limit]
        return {"Items": matched}

    def delete_item(self, Key):
        self.deleted.append(Key)
        self.items.pop(self._key(Key), None)

    @contextmanager
    def batch_writer(self):
        yield self


class FakeDDBResource:
    def __init__(self):
        self.tables = {}

    def Table(self, name):
        if name not in self.tables:
            self.tables[name] = FakeTable(KEY_NAMES.get(name, ("id",)))
        return self.tables[name]


class FakeDDBClient:
    def __init__(self):
        self.transactions = []

    def transact_write_items(self, TransactItems):
        self.transactions.append(TransactItems)
        return {}


class FakeOpenAIClient:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def complete(self, messages, json_response=False):
        self.calls.append({"messages": messages, "json_response": json_response})
        return self.replies.pop(0)


@pytest.fixture(autouse=True)
def fixed_runtime(monkeypatch):
    monkeypatch.setattr(runtime, "now_epoch", lambda: float(NOW))
    monkeypatch.setattr(
        runtime, "get_secure_parameter", lambda key, force_refresh=False: f"secret-{key}"
    )
    monkeypatch.setattr(runtime, "sleep_for", lambda s: None)


@pytest.fixture
def ddb(monkeypatch):
    resource = FakeDDBResource()
    monkeypatch.setattr(runtime, "DDB_RESOURCE", resource)
    return resource


@pytest.fixture
def ddb_client(monkeypatch):
    client = FakeDDBClient()
    monkeypatch.setattr(runtime, "DDB_CLIENT", client)
    return client


@pytest.fixture
def http(monkeypatch):
    session = FakeSession()
    monkeypatch.setattr(runtime, "REQUEST_SESSION", session)
    return session


def users_table(resource):
    return resource.Table("curator_users")


def add_user(resource, user_id="u1", access_token="tok-old", refresh_token="ref-1",
             expires_at_epoch=NOW + 3600, provider_account_id="spotify-u1"):
    users_table(resource).put_item(
        Item={
            "user_id": user_id,
            "provider_account_id": provider_account_id,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at_epoch": expires_at_epoch,
        }
    )


def track_payload(track_id, name, artists, uri=True, kind="track"):
    return {
        "id": track_id,
        "name": name,
        "type": kind,
        "artists": [{"name": a} for a in artists],
        "album": {"name": f"{name} LP", "images": []},
        "duration_ms": 200000,
        "uri": f"spotify:track:{track_id}" if uri else None,
    }
