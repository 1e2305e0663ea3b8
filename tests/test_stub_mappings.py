from pathlib import Path

import pytest

from mock_server import JournalingHTTPServer, MockServerOptions, start_mock_server
from stub_mappings import StubMappingError, load_stub_mappings

MAPPINGS_FILE = Path(__file__).parent / "data" / "mappings.yaml"


def test_mappings_file_is_loaded_on_construction(client):
    with start_mock_server(MockServerOptions(mappings_file=MAPPINGS_FILE)) as mock:
        hello = client.get(mock.url_for("/hello"))
        created = client.post(mock.url_for("/items"), json={"name": "widget"})

        assert hello.text == "Hello"
        assert created.status_code == 201
        assert created.json() == {"id": 1, "name": "widget"}
        assert created.headers["X-Stub"] == "items"
        mock.verify_no_unmatched_requests()


def test_loaded_mappings_can_be_reset(client):
    with start_mock_server() as mock:
        hello, items = load_stub_mappings(mock.server, MAPPINGS_FILE)

        mock.reset_stub(hello)

        assert client.get(mock.url_for("/hello")).status_code == 500
        assert mock.server.handlers == [items]


def test_empty_file_registers_nothing(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")

    assert load_stub_mappings(JournalingHTTPServer(), path) == []


def test_missing_file_is_an_error(tmp_path):
    with pytest.raises(StubMappingError, match="Cannot read"):
        load_stub_mappings(JournalingHTTPServer(), tmp_path / "absent.yaml")


@pytest.mark.parametrize(
    "document, message",
    [
        ("- request: {uri: /a}\n", "top-level 'mappings'"),
        ("mappings:\n  - just a string\n", "mapping #0"),
        ("mappings:\n  - request: {method: GET}\n", "at least 'uri'"),
        ("mappings:\n  - request: {uri: /a, verb: GET}\n", "unsupported keys"),
        (
            "mappings:\n  - request: {uri: /a}\n    response: {body: x, json: {}}\n",
            "both 'body' and 'json'",
        ),
        ("mappings: [\n", "Cannot read"),
    ],
)
def test_invalid_documents_are_rejected(tmp_path, document, message):
    path = tmp_path / "mappings.yaml"
    path.write_text(document)

    with pytest.raises(StubMappingError, match=message):
        load_stub_mappings(JournalingHTTPServer(), path)
