"""Tests for the HTTP fetcher and its error taxonomy."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
import requests

from harvest.config import HEADERS, MAX_REDIRECTS
from harvest.fetcher import (
    FetchError,
    FetchTimeoutError,
    HttpStatusError,
    NetworkError,
    backoff_delay,
    create_session,
    fetch_html,
    fetch_html_async,
    is_retryable,
)

URL = "https://amsterdammodern.com/categories/1-LIGHTING"


def _response(status=200, text="<html></html>", location=None):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.headers = {"Location": location} if location else {}
    return resp


class TestFetchHtml:
    """Synchronous fetch contract."""

    def test_returns_body_on_200(self):
        session = MagicMock()
        session.get.return_value = _response(text="<p>ok</p>")

        assert fetch_html(URL, session=session) == "<p>ok</p>"
        _, kwargs = session.get.call_args
        assert kwargs["allow_redirects"] is False
        assert kwargs["headers"]["User-Agent"] == HEADERS["User-Agent"]

    def test_header_overrides_merged(self):
        session = MagicMock()
        session.get.return_value = _response()

        fetch_html(URL, headers={"Accept-Language": "nl"}, session=session)

        headers = session.get.call_args[1]["headers"]
        assert headers["Accept-Language"] == "nl"
        assert "User-Agent" in headers

    def test_follows_redirect_to_location(self):
        session = MagicMock()
        session.get.side_effect = [
            _response(status=301, location="/categories/1-LIGHTING?page=1"),
            _response(text="moved"),
        ]

        assert fetch_html(URL, session=session) == "moved"
        assert session.get.call_args_list[1][0][0] == URL + "?page=1"

    def test_redirect_not_followed_when_disabled(self):
        session = MagicMock()
        session.get.return_value = _response(status=302, location="/elsewhere")

        with pytest.raises(HttpStatusError) as exc:
            fetch_html(URL, session=session, follow_redirects=False)
        assert exc.value.status == 302

    def test_redirect_chain_is_bounded(self):
        session = MagicMock()
        session.get.return_value = _response(status=302, location="/loop")

        with pytest.raises(HttpStatusError):
            fetch_html(URL, session=session)
        assert session.get.call_count == MAX_REDIRECTS + 1

    def test_non_200_raises_status_error(self):
        session = MagicMock()
        session.get.return_value = _response(status=404)

        with pytest.raises(HttpStatusError) as exc:
            fetch_html(URL, session=session)
        assert exc.value.status == 404
        assert exc.value.url == URL

    def test_timeout_raises_timeout_error(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(FetchTimeoutError) as exc:
            fetch_html(URL, session=session, timeout=0.1)
        assert isinstance(exc.value, TimeoutError)

    def test_connection_error_raises_network_error(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.ConnectionError("dns")

        with pytest.raises(NetworkError):
            fetch_html(URL, session=session)

    def test_disallowed_host_rejected_without_request(self):
        session = MagicMock()

        with pytest.raises(FetchError):
            fetch_html("https://evil.example.com/", session=session)
        session.get.assert_not_called()

    def test_session_has_browser_headers(self):
        session = create_session()

        assert session.headers["User-Agent"] == HEADERS["User-Agent"]


class TestFetchHtmlAsync:
    """Async fetch shares the sync contract."""

    def _session(self, *responses):
        session = MagicMock()
        contexts = []
        for resp in responses:
            ctx = MagicMock()
            ctx.__aenter__ = AsyncMock(return_value=resp)
            ctx.__aexit__ = AsyncMock(return_value=False)
            contexts.append(ctx)
        session.get.side_effect = contexts
        return session

    def _response(self, status=200, text="", location=None):
        resp = MagicMock()
        resp.status = status
        resp.headers = {"Location": location} if location else {}
        resp.text = AsyncMock(return_value=text)
        return resp

    def test_returns_body(self):
        session = self._session(self._response(text="<p>async</p>"))

        assert asyncio.run(fetch_html_async(session, URL)) == "<p>async</p>"

    def test_follows_redirect(self):
        session = self._session(
            self._response(status=301, location="/new"),
            self._response(text="final"),
        )

        assert asyncio.run(fetch_html_async(session, URL)) == "final"
        assert session.get.call_args_list[1][0][0] == "https://amsterdammodern.com/new"

    def test_redirect_chain_is_bounded(self):
        hops = [self._response(status=302, location="/loop") for _ in range(MAX_REDIRECTS + 1)]
        session = self._session(*hops)

        with pytest.raises(HttpStatusError) as exc:
            asyncio.run(fetch_html_async(session, URL))
        assert exc.value.status == 302
        assert session.get.call_count == MAX_REDIRECTS + 1

    def test_redirect_without_location_is_status_error(self):
        session = self._session(self._response(status=301))

        with pytest.raises(HttpStatusError) as exc:
            asyncio.run(fetch_html_async(session, URL))
        assert exc.value.status == 301

    def test_status_error(self):
        session = self._session(self._response(status=503))

        with pytest.raises(HttpStatusError) as exc:
            asyncio.run(fetch_html_async(session, URL))
        assert exc.value.status == 503

    def test_client_error_becomes_network_error(self):
        session = MagicMock()
        session.get.side_effect = aiohttp.ClientConnectionError("refused")

        with pytest.raises(NetworkError):
            asyncio.run(fetch_html_async(session, URL))

    def test_timeout_becomes_timeout_error(self):
        session = MagicMock()
        session.get.side_effect = asyncio.TimeoutError()

        with pytest.raises(FetchTimeoutError):
            asyncio.run(fetch_html_async(session, URL))


class TestRetryPolicy:

    @pytest.mark.parametrize("error, expected", [
        (HttpStatusError(URL, 503), True),
        (HttpStatusError(URL, 429), True),
        (HttpStatusError(URL, 404), False),
        (NetworkError(URL, "down"), True),
        (FetchTimeoutError(URL, "slow"), True),
        (FetchError(URL, "Invalid URL"), False),
    ])
    def test_is_retryable(self, error, expected):
        assert is_retryable(error) is expected

    def test_backoff_grows_and_is_capped(self):
        assert 1 <= backoff_delay(0) <= 2
        assert 4 <= backoff_delay(2) <= 5
        assert backoff_delay(20) <= 31
