"""Tests for the shared feed HTTP client."""

from unittest.mock import MagicMock

import pytest
import requests

from common.errors import FeedUnavailableError, OperationCanceledError
from common.http_client import FeedHttpClient, backoff_delay_ms
from common.request import FeedRequest


def _response(status, text="", headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.headers = headers or {}
    return resp


def _client(*responses, retries=3):
    session = MagicMock()
    session.headers = {}
    session.get.side_effect = list(responses)
    return FeedHttpClient(session=session, max_retries=retries), session


class TestBackoff:
    """Retry delay schedule."""

    def test_first_attempt_immediate(self):
        """Attempt 0 has no delay."""
        assert backoff_delay_ms(0, 1000) == 0

    def test_doubles(self):
        """Each retry doubles the base delay."""
        assert [backoff_delay_ms(n, 1000) for n in (1, 2, 3)] == [1000, 2000, 4000]


class TestFetch:
    """GET with retries."""

    def test_retries_server_errors(self):
        """5xx responses are retried until one succeeds."""
        client, session = _client(_response(503), _response(200, "ok"))
        resp = client.fetch("https://feed.example/v3/index.json")
        assert resp.status_code == 200
        assert session.get.call_count == 2

    def test_retries_connection_errors(self):
        """Transport errors are retried too."""
        client, _ = _client(requests.ConnectionError("boom"), _response(200, "ok"))
        assert client.fetch("https://feed.example/").status_code == 200

    def test_gives_up_after_max_retries(self):
        """The last failure raises FeedUnavailableError."""
        client, session = _client(_response(500), _response(502), retries=2)
        with pytest.raises(FeedUnavailableError):
            client.fetch("https://feed.example/")
        assert session.get.call_count == 2

    def test_client_errors_are_returned(self):
        """4xx responses are not retried."""
        client, session = _client(_response(404))
        assert client.fetch("https://feed.example/missing").status_code == 404
        assert session.get.call_count == 1

    def test_canceled_request_stops(self):
        """A canceled request raises before sending."""
        client, session = _client(_response(200))
        request = FeedRequest()
        request.cancel()
        with pytest.raises(OperationCanceledError):
            client.fetch("https://feed.example/", request=request)
        session.get.assert_not_called()


class TestCredentials:
    """401 handling."""

    def test_401_retries_with_provider_credentials(self):
        """Credentials from the request are used after a 401 and remembered per host."""
        provider = MagicMock(return_value=("user", "secret"))
        request = FeedRequest(credential_provider=provider)
        client, session = _client(_response(401), _response(200, "{}"))

        resp = client.fetch("https://private.example/v3/index.json", request=request)

        assert resp.status_code == 200
        assert session.get.call_args.kwargs["auth"] == ("user", "secret")
        assert client.credentials_for("https://private.example/other") == ("user", "secret")

    def test_static_credential_then_provider_on_retry(self):
        """Static credentials go first; the provider is asked with is_retry=True."""
        provider = MagicMock(return_value=("second", "pw"))
        request = FeedRequest(credential=("first", "pw"), credential_provider=provider)
        client, session = _client(_response(401), _response(401), _response(200))

        resp = client.fetch("https://private.example/", request=request)

        assert resp.status_code == 200
        provider.assert_called_once_with("https://private.example/", True)
        assert session.get.call_count == 3

    def test_401_without_credentials_is_returned(self):
        """Without credentials the 401 response is returned as is."""
        client, _ = _client(_response(401))
        assert client.fetch("https://private.example/", request=FeedRequest()).status_code == 401


class TestGetJson:
    """JSON helpers and caching."""

    def test_parses_json(self):
        """A 200 body is decoded."""
        client, _ = _client(_response(200, '{"version": "3.0.0"}'))
        status, _, data = client.get_json("https://feed.example/index.json")
        assert status == 200
        assert data == {"version": "3.0.0"}

    def test_bad_json_is_none(self):
        """Undecodable bodies come back as None."""
        client, _ = _client(_response(200, "<html>"))
        assert client.get_json("https://feed.example/index.json")[2] is None

    def test_responses_are_cached(self):
        """A second identical GET is served from the session cache."""
        client, session = _client(_response(200, '{"a": 1}'))
        client.get_json("https://feed.example/a")
        client.get_json("https://feed.example/a")
        assert session.get.call_count == 1

    def test_not_found_is_not_cached(self):
        """A 404 is asked again so a package published meanwhile shows up."""
        client, session = _client(_response(404), _response(200, '{"versions": ["1.0.0"]}'))
        assert client.get_json("https://feed.example/foo/index.json")[0] == 404
        status, _, data = client.get_json("https://feed.example/foo/index.json")
        assert status == 200
        assert data == {"versions": ["1.0.0"]}
        assert session.get.call_count == 2

    def test_exhausted_retries_is_status_zero(self):
        """get_text reports status 0 when every attempt failed."""
        client, _ = _client(_response(500), retries=1)
        status, _, text = client.get_text("https://feed.example/")
        assert status == 0
        assert "failed" in text

    def test_probe(self):
        """probe is True only for statuses below 400."""
        client, _ = _client(_response(200), _response(404))
        assert client.probe("https://feed.example/ok")
        assert not client.probe("https://feed.example/missing")
