import unittest
from unittest import mock

import requests

from rentsync.errors import FetchFailed, InvalidFeedURL
from rentsync.feed_client import FeedClient, validate_feed_url
from rentsync.models import FetchConfig, Platform


class ValidateFeedUrlTests(unittest.TestCase):
    def test_accepts_http_and_https(self) -> None:
        self.assertEqual(validate_feed_url(" https://example.com/cal.ics "), "https://example.com/cal.ics")
        self.assertEqual(validate_feed_url("http://example.com:8080/cal"), "http://example.com:8080/cal")

    def test_rejects_malformed_urls(self) -> None:
        for url in (
            "",
            "   ",
            "example.com/cal.ics",
            "webcal://example.com/cal.ics",
            "ftp://example.com/cal.ics",
            "https://",
            "https://exa mple.com/cal.ics",
            "https://[::1/cal.ics",
        ):
            with self.subTest(url=url):
                with self.assertRaises(InvalidFeedURL):
                    validate_feed_url(url)

    def test_platform_pattern_only_checked_when_enforced(self) -> None:
        url = "https://example.com/cal.ics"
        self.assertEqual(validate_feed_url(url, Platform.AIRBNB), url)
        with self.assertRaises(InvalidFeedURL):
            validate_feed_url(url, Platform.AIRBNB, enforce_platform_pattern=True)
        self.assertEqual(validate_feed_url(url, Platform.DIRECT, enforce_platform_pattern=True), url)
        self.assertEqual(
            validate_feed_url("https://www.AIRBNB.com/calendar/ical/1.ics", Platform.AIRBNB, True),
            "https://www.AIRBNB.com/calendar/ical/1.ics",
        )


class FeedClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = FeedClient(FetchConfig(timeout_seconds=15, user_agent="rentsync-test"))

    def test_fetch_returns_decoded_body_and_applies_timeout(self) -> None:
        response = mock.Mock(ok=True, status_code=200, content="SUMMARY:Réservé".encode("utf-8"))
        with mock.patch("rentsync.feed_client.requests.get", return_value=response) as get:
            body = self.client.fetch("https://example.com/cal.ics")
        self.assertEqual(body, "SUMMARY:Réservé")
        self.assertEqual(get.call_args.kwargs["timeout"], 15)
        self.assertEqual(get.call_args.kwargs["headers"]["User-Agent"], "rentsync-test")

    def test_non_2xx_is_fetch_failed(self) -> None:
        response = mock.Mock(ok=False, status_code=404, content=b"not found")
        with mock.patch("rentsync.feed_client.requests.get", return_value=response):
            with self.assertRaises(FetchFailed) as ctx:
                self.client.fetch("https://example.com/cal.ics")
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.code, "FetchFailed")

    def test_final_3xx_is_fetch_failed(self) -> None:
        for status in (300, 304):
            with self.subTest(status=status):
                response = requests.Response()
                response.status_code = status
                response._content = b""
                with mock.patch("rentsync.feed_client.requests.get", return_value=response):
                    with self.assertRaises(FetchFailed) as ctx:
                        self.client.fetch("https://example.com/cal.ics")
                self.assertEqual(ctx.exception.status_code, status)

    def test_transport_errors_are_fetch_failed(self) -> None:
        for error in (requests.ConnectionError("refused"), requests.Timeout("slow"), requests.TooManyRedirects("loop")):
            with self.subTest(error=type(error).__name__):
                with mock.patch("rentsync.feed_client.requests.get", side_effect=error):
                    with self.assertRaises(FetchFailed):
                        self.client.fetch("https://example.com/cal.ics")


if __name__ == "__main__":
    unittest.main()
