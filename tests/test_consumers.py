import json
import queue
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from casebook.consumers import (
    DEFAULT_BATCH_URL,
    AsyncConsumer,
    BatchConsumer,
    Message,
    Reader,
    SyncConsumer,
    post_json,
)


class FakeReader(Reader):
    """Serves queued messages; when empty it sets ``stop`` and times out."""

    def __init__(self, messages, stop, errors=()):
        self._queue = queue.Queue()
        for item in list(errors) + list(messages):
            self._queue.put(item)
        self._stop = stop
        self.commits = []

    def read_message(self, timeout):
        try:
            item = self._queue.get_nowait()
        except queue.Empty:
            self._stop.set()
            raise TimeoutError() from None
        if isinstance(item, Exception):
            raise item
        return item

    def commit_messages(self, *messages):
        self.commits.append(messages)

    def remaining(self):
        return self._queue.qsize()


class Recorder:
    def __init__(self, fail_on=()):
        self._lock = threading.Lock()
        self.calls = []
        self._fail_on = set(fail_on)

    def __call__(self, url, body):
        with self._lock:
            self.calls.append((url, body))
        if body in self._fail_on:
            raise ConnectionError("refused")
        return b"OK"


def make_messages(count):
    return [Message(value=f"v{i}".encode(), topic="t", offset=i + 1) for i in range(count)]


def test_sync_consumer_posts_each_message_in_order():
    stop = threading.Event()
    msgs = make_messages(3)
    reader = FakeReader(msgs, stop)
    post = Recorder()
    SyncConsumer(reader, url="http://h/handle", post=post).consume(stop)
    assert post.calls == [("http://h/handle", m.value) for m in msgs]
    assert reader.commits == []


def test_sync_consumer_survives_failures():
    stop = threading.Event()
    msgs = make_messages(3)
    reader = FakeReader(msgs, stop, errors=[RuntimeError("broken")])
    post = Recorder(fail_on={msgs[0].value})
    SyncConsumer(reader, url="u", post=post).consume(stop)
    assert [body for _, body in post.calls] == [m.value for m in msgs]


def test_async_consumer_commits_last_of_each_batch():
    stop = threading.Event()
    msgs = make_messages(5)
    reader = FakeReader(msgs, stop)
    post = Recorder()
    AsyncConsumer(reader, 3, url="u", post=post).consume(stop)
    assert reader.commits == [(msgs[2],), (msgs[4],)]
    assert sorted(body for _, body in post.calls) == sorted(m.value for m in msgs)


def test_async_consumer_skips_commit_on_failure():
    stop = threading.Event()
    msgs = make_messages(3)
    reader = FakeReader(msgs, stop)
    post = Recorder(fail_on={msgs[1].value})
    AsyncConsumer(reader, 3, url="u", post=post).consume(stop)
    assert reader.commits == []
    assert len(post.calls) == len(msgs)


def test_async_consumer_read_error_drops_batch_then_continues():
    stop = threading.Event()
    msgs = make_messages(2)
    reader = FakeReader(msgs, stop, errors=[RuntimeError("broken")])
    post = Recorder()
    AsyncConsumer(reader, 2, url="u", post=post).consume(stop)
    assert reader.commits == [(msgs[1],)]


def test_async_consumer_rejects_bad_batch_size():
    with pytest.raises(ValueError):
        AsyncConsumer(FakeReader([], threading.Event()), 0)


def test_batch_consumer_posts_json_arrays_and_commits_all():
    stop = threading.Event()
    msgs = make_messages(3)
    reader = FakeReader(msgs, stop)
    post = Recorder()
    BatchConsumer(reader, 2, url="u", post=post).consume(stop)
    assert [json.loads(body) for _, body in post.calls] == [
        [msgs[0].value.decode(), msgs[1].value.decode()],
        [msgs[2].value.decode()],
    ]
    assert reader.commits == [(msgs[0], msgs[1]), (msgs[2],)]


def test_batch_consumer_defaults():
    stop = threading.Event()
    msgs = make_messages(7)
    reader = FakeReader(msgs, stop)
    post = Recorder()
    BatchConsumer(reader, post=post).consume(stop)
    assert reader.commits[0] == tuple(msgs[:5])
    assert all(url == DEFAULT_BATCH_URL for url, _ in post.calls)


def test_batch_consumer_stops_on_failure():
    stop = threading.Event()
    msgs = make_messages(3)
    reader = FakeReader(msgs, stop)
    body = json.dumps([msgs[0].value.decode(), msgs[1].value.decode()], ensure_ascii=False).encode()
    post = Recorder(fail_on={body})
    BatchConsumer(reader, 2, url="u", post=post).consume(stop)
    assert reader.commits == []
    assert not stop.is_set()
    assert reader.remaining() == 1


@pytest.fixture
def echo_server():
    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers["Content-Length"])
            data = self.rfile.read(length)
            status = 500 if self.path == "/fail" else 200
            payload = self.headers["Content-Type"].encode() + b"|" + data
            self.send_response(status)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()


def test_post_json_returns_body(echo_server):
    assert post_json(echo_server + "/handle", b'{"a":1}') == b'application/json|{"a":1}'


def test_post_json_returns_body_on_error_status(echo_server):
    assert post_json(echo_server + "/fail", b"[]") == b"application/json|[]"