"""Lifecycle wrapper around an embedded HTTP stub server for integration tests."""

from __future__ import annotations

from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

from pytest_httpserver import HTTPServer
from pytest_httpserver.httpserver import RequestHandler
from werkzeug import Request, Response

from stub_mappings import load_stub_mappings

logger = logging.getLogger(__name__)

MAX_REQUEST_JOURNAL_ENTRIES = 100
MAX_NEAR_MISSES_PER_REQUEST = 3


@dataclass(slots=True)
class MockServerOptions:
    """Settings used to build a :class:`JournalingHTTPServer`."""

    host: str = "localhost"
    # 0 lets the OS pick a free port.
    port: int = 0
    max_request_journal_entries: int = MAX_REQUEST_JOURNAL_ENTRIES
    no_handler_status_code: int = 500
    threaded: bool = False
    mappings_file: str | Path | None = None


class JournalingHTTPServer(HTTPServer):
    """HTTP stub server that remembers the requests no stub matched."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 0,
        *,
        max_request_journal_entries: int = MAX_REQUEST_JOURNAL_ENTRIES,
        **kwargs: Any,
    ) -> None:
        super().__init__(host=host, port=port, **kwargs)
        self.unmatched_requests: deque[Request] = deque(maxlen=max_request_journal_entries)

    def respond_nohandler(self, request: Request, extra_message: str = "") -> Response:
        self.unmatched_requests.append(request)
        return super().respond_nohandler(request, extra_message)

    def clear_unmatched_requests(self) -> None:
        self.unmatched_requests.clear()


@dataclass(slots=True)
class NearMiss:
    """A stub mapping that almost matched an unmatched request."""

    request: Request
    mapping: RequestHandler
    differences: list[tuple[str, Any, Any]] = field(default_factory=list)

    def describe(self) -> str:
        diffs = "; ".join(
            f"{attribute}: expected {expected!r}, got {actual!r}"
            for attribute, actual, expected in self.differences
        )
        matcher = self.mapping.matcher
        return f"{describe_request(self.request)} almost matched {matcher.method} {matcher.uri!s} ({diffs})"


class VerificationError(AssertionError):
    """Raised when the mock server received requests that no stub matched."""

    def __init__(
        self,
        message: str,
        *,
        unmatched_requests: Sequence[Request] = (),
        near_misses: Sequence[NearMiss] = (),
    ) -> None:
        super().__init__(message)
        self.unmatched_requests = list(unmatched_requests)
        self.near_misses = list(near_misses)

    @classmethod
    def for_unmatched_requests(cls, requests: Sequence[Request]) -> "VerificationError":
        lines = [f"{len(requests)} request(s) matched no stub mapping:"]
        lines.extend(f"  {describe_request(request)}" for request in requests)
        return cls("\n".join(lines), unmatched_requests=requests)

    @classmethod
    def for_near_misses(
        cls,
        near_misses: Sequence[NearMiss],
        unmatched_requests: Sequence[Request] = (),
    ) -> "VerificationError":
        requests = list(unmatched_requests)
        for near_miss in near_misses:
            if not any(near_miss.request is seen for seen in requests):
                requests.append(near_miss.request)
        lines = [f"{len(requests)} request(s) matched no stub mapping. Closest stubs:"]
        lines.extend(f"  {near_miss.describe()}" for near_miss in near_misses)
        for request in requests:
            if not any(near_miss.request is request for near_miss in near_misses):
                lines.append(f"  {describe_request(request)} (no close stub)")
        return cls("\n".join(lines), unmatched_requests=requests, near_misses=near_misses)


def describe_request(request: Request) -> str:
    path = request.path
    if request.query_string:
        path = f"{path}?{request.query_string.decode('utf-8', 'replace')}"
    return f"{request.method} {path}"


def _near_misses_for(request: Request, mappings: Sequence[RequestHandler]) -> list[NearMiss]:
    candidates = []
    for mapping in mappings:
        differences = mapping.matcher.difference(request)
        attributes = {attribute for attribute, _, _ in differences}
        # A stub is only close when the path or the method agrees.
        if not differences or {"uri", "method"} <= attributes:
            continue
        candidates.append(NearMiss(request, mapping, differences))
    candidates.sort(key=lambda near_miss: len(near_miss.differences))
    return candidates[:MAX_NEAR_MISSES_PER_REQUEST]


class MockServerHandle:
    """Owns a :class:`JournalingHTTPServer` and starts it on construction.

    Use :meth:`from_options` to build a server with defaults (ephemeral port,
    bounded request journal), or :func:`start_mock_server` to get a handle
    that is always stopped when the block exits.
    """

    def __init__(self, server: JournalingHTTPServer) -> None:
        self._server = server
        if not server.is_running():
            server.start()
        logger.info("Mock server listening on %s:%s", server.host, server.port)

    @classmethod
    def from_options(
        cls,
        options: MockServerOptions | None = None,
        configure: Callable[[MockServerOptions], None] | None = None,
    ) -> "MockServerHandle":
        options = replace(options) if options is not None else MockServerOptions()
        if configure is not None:
            configure(options)

        server = JournalingHTTPServer(
            host=options.host,
            port=options.port,
            max_request_journal_entries=options.max_request_journal_entries,
            threaded=options.threaded,
        )
        server.no_handler_status_code = options.no_handler_status_code
        if options.mappings_file is not None:
            load_stub_mappings(server, options.mappings_file)
        return cls(server)

    def __enter__(self) -> "MockServerHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.is_running:
            self.stop()

    @property
    def server(self) -> JournalingHTTPServer:
        return self._server

    @property
    def is_running(self) -> bool:
        return self._server.is_running()

    def port(self) -> int:
        """Return the TCP port the server is bound to."""

        return self._server.port

    def url_for(self, suffix: str) -> str:
        return self._server.url_for(suffix)

    def expect_request(self, uri: str, *args: Any, **kwargs: Any) -> RequestHandler:
        """Register a stub mapping; respond with ``respond_with_*`` on the result."""

        return self._server.expect_request(uri, *args, **kwargs)

    def reset_stub(self, mapping: RequestHandler) -> None:
        """Remove one stub mapping. Unknown mappings are ignored."""

        for handlers in (
            self._server.handlers,
            self._server.oneshot_handlers,
            self._server.ordered_handlers,
        ):
            for index, handler in enumerate(handlers):
                if handler is mapping:
                    del handlers[index]
                    return

    def reset_all_stubs(self) -> None:
        """Drop every stub mapping. The server keeps running and the journal is kept."""

        self._server.clear_all_handlers()

    def reset_requests(self) -> None:
        """Forget every received request, including the engine's failed assertions."""

        self._server.clear_log()
        self._server.clear_assertions()
        self._server.permanently_failed = False
        self._server.clear_unmatched_requests()

    def find_unmatched_requests(self) -> list[Request]:
        return list(self._server.unmatched_requests)

    def find_near_misses(self, requests: Sequence[Request] | None = None) -> list[NearMiss]:
        """Return close stubs for ``requests``, or for the journal when omitted."""

        if requests is None:
            requests = self.find_unmatched_requests()
        mappings = [
            *self._server.ordered_handlers,
            *self._server.oneshot_handlers,
            *self._server.handlers,
        ]
        near_misses: list[NearMiss] = []
        for request in requests:
            near_misses.extend(_near_misses_for(request, mappings))
        return near_misses

    def verify_no_unmatched_requests(self) -> None:
        """Fail if any request reached the server without matching a stub.

        When some stub came close to an unmatched request the error lists the
        differences, otherwise it lists the raw unmatched requests.

        :raises VerificationError: if there are unmatched requests.
        """

        unmatched = self.find_unmatched_requests()
        if not unmatched:
            return

        logger.warning(
            "Unmatched requests: %s",
            ", ".join(describe_request(request) for request in unmatched),
        )
        near_misses = self.find_near_misses(unmatched)
        if near_misses:
            raise VerificationError.for_near_misses(near_misses, unmatched)
        raise VerificationError.for_unmatched_requests(unmatched)

    def stop(self) -> None:
        self._server.stop()
        logger.info("Mock server on port %s stopped", self._server.port)


@contextmanager
def start_mock_server(
    options: MockServerOptions | None = None,
    configure: Callable[[MockServerOptions], None] | None = None,
) -> Iterator[MockServerHandle]:
    """Build and start a mock server, stopping it when the block exits."""

    handle = MockServerHandle.from_options(options, configure)
    try:
        yield handle
    finally:
        if handle.is_running:
            handle.stop()


__all__ = [
    "JournalingHTTPServer",
    "MAX_REQUEST_JOURNAL_ENTRIES",
    "MockServerHandle",
    "MockServerOptions",
    "NearMiss",
    "VerificationError",
    "describe_request",
    "start_mock_server",
]
