import json

import pytest
import requests

from content_store import ContentStoreClient
from errors import ContentStoreUnavailable


def _response(status, body=b""):
    resp = requests.Response()
    resp.status_code = status
    resp._content = body if isinstance(body, bytes) else json.dumps(body).encode()
    return resp


class StubSession:
    def __init__(self, post=None, get=None):
        self._post = post
        self._get = get
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        if isinstance(self._post, Exception):
            raise self._post
        return self._post

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        if isinstance(self._get, Exception):
            raise self._get
        return self._get


def _client(session):
    return ContentStoreClient("http://ipfs:5001/api/v0/", "http://gateway:8080/", timeout=3, session=session)


def test_put_posts_multipart_and_returns_hash():
    session = StubSession(post=_response(200, {"Hash": "QmAbc", "Name": "data.json"}))
    assert _client(session).put_json({"batchId": "HRV-001"}) == "QmAbc"

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "http://ipfs:5001/api/v0/add")
    name, data, content_type = kwargs["files"]["file"]
    assert content_type == "application/json"
    assert json.loads(data) == {"batchId": "HRV-001"}
    assert kwargs["timeout"] == 3


@pytest.mark.parametrize("post", [
    _response(500, b"boom"),
    _response(200, {"Hash": "", "Name": "x"}),
    _response(200, b"not json"),
    requests.ConnectionError("refused"),
])
def test_put_failures_raise(post):
    with pytest.raises(ContentStoreUnavailable):
        _client(StubSession(post=post)).put(b"\x89PNG", "image/png")


def test_get_reads_from_gateway():
    session = StubSession(get=_response(200, {"productName": "Cabai"}))
    client = _client(session)
    assert client.get_json("QmAbc") == {"productName": "Cabai"}
    assert session.calls[0][1] == "http://gateway:8080/ipfs/QmAbc"


@pytest.mark.parametrize("get", [_response(404, b"not found"), requests.Timeout("slow")])
def test_get_degrades_to_empty(get):
    client = _client(StubSession(get=get))
    assert client.get("QmAbc") == b""
    assert client.get_json("QmAbc") == {}


def test_get_without_address_skips_the_network():
    session = StubSession()
    assert _client(session).get("") == b""
    assert session.calls == []


def test_get_json_ignores_non_object_content():
    client = _client(StubSession(get=_response(200, b"[1, 2, 3]")))
    assert client.get_json("QmList") == {}
