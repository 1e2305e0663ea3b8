"""Load stub mappings for the mock server from a YAML file.

The file holds a ``mappings`` list; each entry pairs a ``request`` matcher with
a canned ``response``::

    mappings:
      - request:
          uri: /hello
          method: GET
        response:
          status: 200
          body: Hello
      - request:
          uri: /items
          method: POST
          json: {name: widget}
        response:
          status: 201
          json: {id: 1}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pytest_httpserver import HTTPServer
from pytest_httpserver.httpserver import RequestHandler

logger = logging.getLogger(__name__)

_REQUEST_KEYS = {"uri", "method", "data", "data_encoding", "headers", "query_string", "json"}
_RESPONSE_KEYS = {"status", "body", "json", "headers", "content_type"}


class StubMappingError(ValueError):
    """Raised when a mappings file cannot be turned into stubs."""


def load_stub_mappings(server: HTTPServer, path: str | Path) -> list[RequestHandler]:
    """Register every mapping in ``path`` on ``server`` and return them."""

    path = Path(path)
    try:
        with open(path, "r") as f:
            document = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise StubMappingError(f"Cannot read stub mappings from {path}: {exc}") from exc

    if document is None:
        return []
    if not isinstance(document, dict) or not isinstance(document.get("mappings"), list):
        raise StubMappingError(f"{path}: expected a top-level 'mappings' list")

    handlers = [
        _register(server, entry, f"{path}: mapping #{index}")
        for index, entry in enumerate(document["mappings"])
    ]
    logger.info("Registered %d stub mappings from %s", len(handlers), path)
    return handlers


def _register(server: HTTPServer, entry: Any, where: str) -> RequestHandler:
    if not isinstance(entry, dict):
        raise StubMappingError(f"{where}: expected a mapping with 'request' and 'response'")

    request = entry.get("request")
    response = entry.get("response") or {}
    if not isinstance(request, dict) or "uri" not in request:
        raise StubMappingError(f"{where}: 'request' must define at least 'uri'")
    if not isinstance(response, dict):
        raise StubMappingError(f"{where}: 'response' must be a mapping")

    unknown = (set(request) - _REQUEST_KEYS) | (set(response) - _RESPONSE_KEYS)
    if unknown:
        raise StubMappingError(f"{where}: unsupported keys {sorted(unknown)}")
    if "body" in response and "json" in response:
        raise StubMappingError(f"{where}: response cannot define both 'body' and 'json'")

    handler = server.expect_request(**request)

    status = int(response.get("status", 200))
    headers = response.get("headers")
    if "json" in response:
        handler.respond_with_json(response["json"], status=status, headers=headers)
    else:
        handler.respond_with_data(
            response.get("body", ""),
            status=status,
            headers=headers,
            content_type=response.get("content_type"),
        )
    return handler


__all__ = ["StubMappingError", "load_stub_mappings"]
