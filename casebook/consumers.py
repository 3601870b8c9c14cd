"""Message consumers that hand each message, or each batch, to an HTTP endpoint."""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_HANDLE_URL = "http://localhost:8080/handle"
DEFAULT_SINGLE_URL = "http://localhost:8080/single"
DEFAULT_BATCH_URL = "http://localhost:8080/batch"

PostFunc = Callable[[str, bytes], bytes]


@dataclass(frozen=True)
class Message:
    value: bytes
    key: bytes = b""
    topic: str = ""
    partition: int = 0
    offset: int = 0


class Reader(ABC):
    """Source of messages with explicit offset commits."""

    @abstractmethod
    def read_message(self, timeout: float) -> Message:
        """Return the next message; raise :class:`TimeoutError` if none arrives in ``timeout`` seconds."""

    @abstractmethod
    def commit_messages(self, *messages: Message) -> None:
        """Mark ``messages`` (and everything before them) as consumed."""


class ConsumeError(Exception):
    """Raised when a batch cannot be read, processed or committed."""


def post_json(url: str, body: bytes) -> bytes:
    """POST ``body`` as JSON and return the response body, whatever the status."""
    request = urllib.request.Request(
        url, data=body, headers={"Content-Type": "application/json"}, method="POST"
    )
    try:
        with urllib.request.urlopen(request) as response:
            return response.read()
    except urllib.error.HTTPError as exc:
        try:
            return exc.read()
        finally:
            exc.close()


class SyncConsumer:
    """Processes messages one at a time without committing."""

    def __init__(
        self,
        reader: Reader,
        url: str = DEFAULT_HANDLE_URL,
        post: PostFunc = post_json,
        poll_timeout: float = 1.0,
    ) -> None:
        self._reader = reader
        self._url = url
        self._post = post
        self._poll_timeout = poll_timeout

    def consume(self, stop: threading.Event) -> None:
        """Consume until ``stop`` is set."""
        while not stop.is_set():
            try:
                msg = self._reader.read_message(self._poll_timeout)
            except TimeoutError:
                continue
            except Exception:
                logger.exception("读取消息失败")
                continue
            try:
                resp = self._post(self._url, msg.value)
                logger.debug("处理完毕 %s", resp.decode("utf-8", "replace"))
            except Exception:
                logger.exception("业务处理失败")
        logger.info("退出消费循环")


class AsyncConsumer:
    """Reads up to ``batch_size`` messages, processes them concurrently, commits the last.

    A batch is closed early when ``batch_timeout`` seconds pass without filling it.
    """

    def __init__(
        self,
        reader: Reader,
        batch_size: int,
        url: str = DEFAULT_HANDLE_URL,
        post: PostFunc = post_json,
        batch_timeout: float = 1.0,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._reader = reader
        self._batch_size = batch_size
        self._url = url
        self._post = post
        self._batch_timeout = batch_timeout

    def consume(self, stop: threading.Event) -> None:
        """Consume batches until ``stop`` is set; failed batches are logged and skipped."""
        while not stop.is_set():
            try:
                self._consume_batch(stop)
            except Exception:
                logger.exception("消费失败")
        logger.info("退出消费循环")

    def _do_biz(self, msg: Message) -> None:
        resp = self._post(self._url, msg.value)
        logger.debug("处理完毕 %s", resp.decode("utf-8", "replace"))

    def _consume_batch(self, stop: threading.Event) -> None:
        deadline = time.monotonic() + self._batch_timeout
        last: Message | None = None
        pending = []
        with ThreadPoolExecutor(max_workers=self._batch_size) as pool:
            for _ in range(self._batch_size):
                remaining = deadline - time.monotonic()
                if remaining <= 0 or stop.is_set():
                    break
                try:
                    msg = self._reader.read_message(remaining)
                except TimeoutError:
                    break
                except Exception as exc:
                    raise ConsumeError(f"获取消息失败 {exc}") from exc
                last = msg
                pending.append((msg, pool.submit(self._do_biz, msg)))
        if last is None:
            return
        for msg, future in pending:
            exc = future.exception()
            if exc is not None:
                raise ConsumeError(f"执行业务失败 offset {msg.offset}, topic {msg.topic}, 原因 {exc}") from exc
        try:
            self._reader.commit_messages(last)
        except Exception as exc:
            raise ConsumeError(f"提交消息失败 offset {last.offset} topic {last.topic}, 原因 {exc}") from exc


class BatchConsumer:
    """Sends each batch of message values as one JSON array, then commits the batch.

    Stops consuming at the first batch that fails.
    """

    def __init__(
        self,
        reader: Reader,
        batch_size: int = 5,
        url: str = DEFAULT_BATCH_URL,
        post: PostFunc = post_json,
        batch_timeout: float = 1.0,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._reader = reader
        self._batch_size = batch_size
        self._url = url
        self._post = post
        self._batch_timeout = batch_timeout

    def consume(self, stop: threading.Event) -> None:
        """Consume until ``stop`` is set or a batch fails."""
        while not stop.is_set():
            try:
                self._consume_batch()
            except Exception:
                logger.exception("消费失败")
                return

    def _consume_batch(self) -> None:
        deadline = time.monotonic() + self._batch_timeout
        msgs: list[Message] = []
        for _ in range(self._batch_size):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                msgs.append(self._reader.read_message(remaining))
            except Exception:
                break
        if not msgs:
            return
        body = json.dumps(
            [msg.value.decode("utf-8", "replace") for msg in msgs], ensure_ascii=False
        ).encode("utf-8")
        try:
            resp = self._post(self._url, body)
        except Exception as exc:
            raise ConsumeError(f"批量消费消息失败 {exc}") from exc
        logger.debug("处理完毕 %s", resp.decode("utf-8", "replace"))
        try:
            self._reader.commit_messages(*msgs)
        except Exception as exc:
            raise ConsumeError(f"提交消息失败 {exc}") from exc