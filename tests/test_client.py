import json
import time
from io import BytesIO
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlsplit

import pytest

import stadia_spider.rpc.client as client_module
from stadia_spider.rpc.batch import EnvelopeError
from stadia_spider.rpc.client import Client, TransportError
from stadia_spider.rpc.session import GoogleCookies
from stadia_spider.rpc.throttle import Throttle

SETTINGS_HTML = """<!doctype html><html><head>
<script nonce="x">window.WIZ_global_data = {"SNlM0e":"AT\\x3dtoken","cfb2h":"boq_release_1","FdrFJe":"-42","other":"a\\x26b"};</script>
</head><body>settings</body></html>"""

CAPTURE_ID = "0f6c1b2a-3d4e-4f50-8a9b-0c1d2e3f4a5b"


class FakeResponse:
    def __init__(self, body, status=200):
        self.body = body.encode("utf-8")
        self.status = status

    def read(self):
        return self.body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _stream(*results):
    text = json.dumps([
        ["wrb.fr", method_id, json.dumps(payload), None, None, None, str(index)]
        for method_id, payload, index in results
    ])
    return f")]}}'\n\n{len(text)}\n{text}\n25\n[[\"e\",4,null,null,131]]\n"


class FakeServer:
    """Routes urlopen calls: GET settings returns the token page, POSTs go to handler."""

    def __init__(self, handler=None):
        self.handler = handler
        self.requests = []

    def __call__(self, req, timeout=None):
        self.requests.append(req)
        if req.get_method() == "GET":
            return FakeResponse(SETTINGS_HTML)
        form = parse_qs(req.data.decode("utf-8"))
        envelopes = json.loads(form["f.req"][0])[0]
        pairs = [(method_id, json.loads(args)) for method_id, args, _, _ in envelopes]
        return self.handler(req, pairs)


@pytest.fixture
def client():
    return Client(
        "1234",
        GoogleCookies("sid", "ssid", "hsid"),
        throttle=Throttle(0, sleep=lambda seconds: None),
    )


def test_parse_wiz_global_data():
    data = Client.parse_wiz_global_data(SETTINGS_HTML)
    assert data["SNlM0e"] == "AT=token"
    assert data["other"] == "a&b"


def test_parse_wiz_global_data_missing():
    with pytest.raises(TransportError):
        Client.parse_wiz_global_data("<html><script>var x = 1;</script></html>")


def test_fetch_rpc_batch_sends_tokens_and_orders_results(client, monkeypatch):
    def handler(req, pairs):
        # answer out of order
        return FakeResponse(_stream(("B", ["second"], 2), ("A", ["first", pairs[0][1]], 1)))

    server = FakeServer(handler)
    monkeypatch.setattr(client_module, "urlopen", server)

    results = client.fetch_rpc_batch([("A", [None, "x"]), ("B", None)])
    assert results == [["first", [None, "x"]], ["second"]]

    get, post = server.requests
    assert urlsplit(get.full_url).path == "/settings"
    query = parse_qs(urlsplit(post.full_url).query)
    assert query["rpcids"] == ["A,B"]
    assert query["f.sid"] == ["-42"]
    assert query["bl"] == ["boq_release_1"]
    assert query["rt"] == ["c"]
    assert parse_qs(post.data.decode("utf-8"))["at"] == ["AT=token"]
    assert post.get_header("Cookie") == "SID=sid; SSID=ssid; HSID=hsid;"
    assert post.get_header("Content-type").startswith("application/x-www-form-urlencoded")


def test_tokens_fetched_once(client, monkeypatch):
    server = FakeServer(lambda req, pairs: FakeResponse(_stream(("A", [], 1))))
    monkeypatch.setattr(client_module, "urlopen", server)
    client.fetch_rpc("A")
    client.fetch_rpc("A")
    assert [req.get_method() for req in server.requests] == ["GET", "POST", "POST"]


def test_empty_batch_makes_no_request(client, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(client_module, "urlopen", fail)
    assert client.fetch_rpc_batch([]) == []


def test_response_count_mismatch(client, monkeypatch):
    server = FakeServer(lambda req, pairs: FakeResponse(_stream(("A", [], 1))))
    monkeypatch.setattr(client_module, "urlopen", server)
    with pytest.raises(TransportError):
        client.fetch_rpc_batch([("A", None), ("B", None)])


def test_http_error_raises_transport_error(client, monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise HTTPError(req.full_url, 500, "Server Error", hdrs=None, fp=BytesIO(b""))

    monkeypatch.setattr(client_module, "urlopen", fake_urlopen)
    with pytest.raises(TransportError, match="500"):
        client.fetch_http("settings")


def test_non_200_status_raises_transport_error(client, monkeypatch):
    monkeypatch.setattr(client_module, "urlopen", lambda req, timeout=None: FakeResponse("", status=204))
    with pytest.raises(TransportError):
        client.fetch_http("settings")


def test_network_error_raises_transport_error(client, monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise URLError("connection refused")

    monkeypatch.setattr(client_module, "urlopen", fake_urlopen)
    with pytest.raises(TransportError):
        client.fetch_http("settings")


def test_malformed_stream_raises_envelope_error(client, monkeypatch):
    server = FakeServer(lambda req, pairs: FakeResponse(")]}'\n\n9\n[[\"wrb.fr\""))
    monkeypatch.setattr(client_module, "urlopen", server)
    with pytest.raises(EnvelopeError):
        client.fetch_rpc("A")


def test_refuses_other_origins(client, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("cookies must not be sent")

    monkeypatch.setattr(client_module, "urlopen", fail)
    with pytest.raises(TransportError):
        client.fetch_http("https://example.com/steal")


def test_offline_client_refuses_requests(monkeypatch):
    monkeypatch.setattr(client_module, "urlopen", lambda *a, **k: pytest.fail("offline"))
    with pytest.raises(TransportError):
        Client(offline=True).fetch_http("settings")


def _capture(index):
    capture_id = CAPTURE_ID[:-2] + f"{index:02x}"
    return [None, capture_id, ["4f9a2b1crcp1"], "Test Game", [1600000000 + index], None, None,
            [None, f"https://lh3.googleusercontent.com/{index}"], None]


def test_fetch_captures_pages(client, monkeypatch):
    monkeypatch.setattr(Client, "CAPTURES_PAGE_SIZE", 2)
    pages = {
        None: [[_capture(1), "separator", _capture(2)], "page2"],
        "page2": [[_capture(3)], None],
    }

    def handler(req, pairs):
        (method_id, args), = pairs
        assert method_id == "CmnEcf"
        return FakeResponse(_stream(("CmnEcf", pages[args[0][1]], 1)))

    monkeypatch.setattr(client_module, "urlopen", FakeServer(handler))
    captures = list(client.fetch_captures())
    assert [c.timestamp for c in captures] == [1600000001, 1600000002, 1600000003]
    assert captures[0].game_id == "4f9a2b1crcp1"
    assert captures[0].video_url is None


def test_sequential_calls_are_spaced_by_throttle_interval(monkeypatch):
    interval = 0.05
    client = Client("1234", GoogleCookies("sid", "ssid", "hsid"), throttle=Throttle(interval))
    starts = []
    inner = FakeServer(lambda req, pairs: FakeResponse(_stream(("A", [len(starts)], 1))))

    def timed_urlopen(req, timeout=None):
        starts.append(time.monotonic())
        return inner(req, timeout)

    monkeypatch.setattr(client_module, "urlopen", timed_urlopen)
    for _ in range(3):
        client.fetch_rpc_batch([("A", None)])

    # the token page plus three batches
    assert len(starts) == 4
    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert all(gap >= interval - 0.001 for gap in gaps), gaps
