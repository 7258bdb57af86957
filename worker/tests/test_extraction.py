import pytest
import requests

from boothworker.core.config import Settings
from boothworker.core.errors import ExtractionError
from boothworker.vendors.extraction import ExtractionClient

PAGES = [{"url": "https://www.photobooth.net/locations/berlin", "markdown": "# Berlin booths"}]
METADATA = {"source_name": "photobooth.net", "source_url": "https://www.photobooth.net/locations/"}


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummySession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def _client(session, url="http://extractor.local/extract"):
    return ExtractionClient(Settings(extraction_service_url=url), session=session)


def test_extract_returns_validated_candidates():
    session = DummySession(
        DummyResponse(
            payload={
                "booths": [
                    {"name": "Mauerpark Booth", "city": "Berlin", "country": "Germany"},
                    {"name": "No city"},
                ]
            }
        )
    )

    candidates = _client(session).extract(PAGES, METADATA)

    assert [candidate.name for candidate in candidates] == ["Mauerpark Booth"]
    assert candidates[0].source_name == "photobooth.net"
    url, body, timeout = session.calls[0]
    assert url == "http://extractor.local/extract"
    assert body["pages"][0]["markdown"] == "# Berlin booths"
    assert body["source"] == METADATA


def test_no_usable_pages_skips_the_request():
    session = DummySession()
    assert _client(session).extract([{"url": "https://a"}], METADATA) == []
    assert session.calls == []


def test_missing_url_raises():
    with pytest.raises(ExtractionError):
        _client(DummySession(), url="").extract(PAGES, METADATA)


@pytest.mark.parametrize(
    "session",
    [
        DummySession(error=requests.Timeout("slow")),
        DummySession(DummyResponse(status_code=500, text="boom")),
        DummySession(DummyResponse(payload=None, text="<html>")),
    ],
)
def test_service_failures_raise_extraction_error(session):
    with pytest.raises(ExtractionError):
        _client(session).extract(PAGES, METADATA)
