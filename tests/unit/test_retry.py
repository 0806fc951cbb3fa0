"""
Unit tests for the external-call retry policy.
"""

from unittest.mock import MagicMock, Mock

import openai
import pytest
import requests

from src.utils.retry import call_with_retries, is_transient


def _http_error(status):
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(response=response)


class TestIsTransient:
    def test_connection_and_timeout(self):
        assert is_transient(requests.ConnectionError())
        assert is_transient(requests.Timeout())
        assert is_transient(openai.APIConnectionError(request=Mock()))

    def test_server_errors_retry_client_errors_do_not(self):
        assert is_transient(_http_error(503))
        assert not is_transient(_http_error(400))

    def test_other_errors(self):
        assert not is_transient(ValueError("bad"))


class TestCallWithRetries:
    def test_success_first_try(self):
        sleep = MagicMock()
        assert call_with_retries(lambda: 42, sleep=sleep) == 42
        sleep.assert_not_called()

    def test_retries_then_succeeds_with_backoff(self):
        func = MagicMock(side_effect=[requests.ConnectionError(), requests.Timeout(), "ok"])
        sleep = MagicMock()

        result = call_with_retries(func, max_retries=2, delay=0.5, backoff=2.0, sleep=sleep)

        assert result == "ok"
        assert func.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_gives_up_after_max_retries(self):
        func = MagicMock(side_effect=requests.ConnectionError("down"))
        sleep = MagicMock()

        with pytest.raises(requests.ConnectionError):
            call_with_retries(func, max_retries=2, delay=0.1, sleep=sleep)

        assert func.call_count == 3
        assert sleep.call_count == 2

    def test_non_transient_not_retried(self):
        func = MagicMock(side_effect=ValueError("bad input"))
        sleep = MagicMock()

        with pytest.raises(ValueError):
            call_with_retries(func, max_retries=3, sleep=sleep)

        assert func.call_count == 1
        sleep.assert_not_called()

    def test_custom_predicate(self):
        func = MagicMock(side_effect=[KeyError("x"), "done"])
        result = call_with_retries(
            func, max_retries=1, delay=0, retry_if=lambda e: isinstance(e, KeyError), sleep=MagicMock()
        )
        assert result == "done"
