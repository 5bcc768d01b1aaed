"""Tests for the remote save contract and the project API client."""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
from requests.exceptions import ConnectionError, RequestException, Timeout

from script_autosave import content_hash
from script_autosave.remote import (
    ProjectApiClient,
    ProjectApiError,
    RemoteRecord,
    RemoteSaveResult,
    coerce_result,
    parse_timestamp,
)

BASE_URL = "http://api.test"


def make_response(status_code: int = 200, payload: dict | None = None, text: str = "") -> Mock:
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = payload if payload is not None else {}
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def session() -> Mock:
    return Mock()


@pytest.fixture
def client(session: Mock) -> ProjectApiClient:
    return ProjectApiClient(base_url=BASE_URL + "/", session=session)


class TestRemoteSaveResult:
    def test_success(self):
        result = RemoteSaveResult.success("abc", "prior")
        assert result.ok is True
        assert result.remote_content_hash == "abc"
        assert result.remote_content == "prior"
        assert result.reason is None

    def test_failure(self):
        result = RemoteSaveResult.failure("offline")
        assert result.ok is False
        assert result.reason == "offline"
        assert result.remote_content_hash is None

    def test_coerce_none_is_success_without_hash(self):
        assert coerce_result(None) == RemoteSaveResult(ok=True)

    def test_coerce_dict(self):
        result = coerce_result({"ok": False, "reason": "stale", "remote_content_hash": "h"})
        assert result == RemoteSaveResult(ok=False, remote_content_hash="h", reason="stale")

    def test_coerce_passthrough(self):
        result = RemoteSaveResult.success("h")
        assert coerce_result(result) is result

    def test_coerce_rejects_other_types(self):
        with pytest.raises(TypeError):
            coerce_result(42)


class TestParseTimestamp:
    def test_iso_with_z(self):
        assert parse_timestamp("2024-01-01T00:00:00.000Z") == 1_704_067_200_000

    def test_iso_with_offset(self):
        assert parse_timestamp("2024-01-01T01:00:00+01:00") == 1_704_067_200_000

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_missing_or_invalid(self, value):
        assert parse_timestamp(value) is None


class TestLoad:
    def test_single_episode_script(self, client: ProjectApiClient, session: Mock):
        session.request.return_value = make_response(
            payload={
                "id": "p1",
                "scriptContent": "Hello",
                "updatedAt": "2024-01-01T00:00:00.000Z",
            }
        )

        record = client.load("p1", "single")

        assert record == RemoteRecord(content="Hello", updated_at=1_704_067_200_000)
        session.request.assert_called_once_with(
            "GET", f"{BASE_URL}/api/projects/p1", timeout=30
        )

    def test_episode_script(self, client: ProjectApiClient, session: Mock):
        session.request.return_value = make_response(
            payload={"id": "p1", "episodeScripts": {"1": "Ep one", "2": "Ep two"}}
        )
        assert client.load("p1", 2).content == "Ep two"
        assert client.load("p1", "1").content == "Ep one"

    def test_missing_script_is_empty(self, client: ProjectApiClient, session: Mock):
        session.request.return_value = make_response(
            payload={"id": "p1", "scriptContent": None, "episodeScripts": None}
        )
        assert client.load("p1", "single").content == ""
        assert client.load("p1", 3).content == ""

    def test_not_found(self, client: ProjectApiClient, session: Mock):
        session.request.return_value = make_response(404, text="Project not found")
        with pytest.raises(ProjectApiError, match="Not found"):
            client.load("missing", "single")

    def test_client_error(self, client: ProjectApiClient, session: Mock):
        session.request.return_value = make_response(400, text="bad")
        with pytest.raises(ProjectApiError, match="400"):
            client.load("p1", "single")


class TestRetry:
    def test_server_error_is_retried(self, session: Mock):
        client = ProjectApiClient(base_url=BASE_URL, max_retries=2, session=session)
        session.request.side_effect = [
            make_response(500, text="boom"),
            make_response(payload={"scriptContent": "ok"}),
        ]
        with patch("script_autosave.remote.time.sleep") as sleep:
            assert client.load("p1", "single").content == "ok"
        sleep.assert_called_once_with(1)

    def test_server_error_exhausts_retries(self, session: Mock):
        client = ProjectApiClient(base_url=BASE_URL, max_retries=3, session=session)
        session.request.return_value = make_response(503, text="unavailable")
        with patch("script_autosave.remote.time.sleep") as sleep:
            with pytest.raises(ProjectApiError, match="Server error"):
                client.load("p1", "single")
        assert session.request.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1, 2]

    def test_timeout(self, session: Mock):
        client = ProjectApiClient(base_url=BASE_URL, max_retries=1, session=session)
        session.request.side_effect = Timeout()
        with pytest.raises(ProjectApiError, match="timed out"):
            client.load("p1", "single")

    def test_connection_error_is_not_retried(self, session: Mock):
        client = ProjectApiClient(base_url=BASE_URL, max_retries=3, session=session)
        session.request.side_effect = ConnectionError()
        with pytest.raises(ProjectApiError, match="Cannot connect"):
            client.load("p1", "single")
        assert session.request.call_count == 1


class TestSave:
    def test_single_episode(self, client: ProjectApiClient, session: Mock):
        session.request.side_effect = [
            make_response(payload={"scriptContent": "Old"}),
            make_response(payload={"scriptContent": "New"}),
        ]

        result = client.save("p1", "single", "New")

        assert result.ok is True
        assert result.remote_content == "Old"
        assert result.remote_content_hash == content_hash("Old")
        method, url = session.request.call_args.args
        assert (method, url) == ("PATCH", f"{BASE_URL}/api/projects/p1")
        assert session.request.call_args.kwargs["json"] == {"scriptContent": "New"}

    def test_episode_merges_other_scripts(self, client: ProjectApiClient, session: Mock):
        session.request.side_effect = [
            make_response(payload={"episodeScripts": {"1": "one", "2": "two"}}),
            make_response(payload={}),
        ]

        result = client.save("p1", 2, "TWO")

        assert result.remote_content == "two"
        assert session.request.call_args.kwargs["json"] == {
            "episodeScripts": {"1": "one", "2": "TWO"}
        }

    def test_failure_is_reported_not_raised(self, client: ProjectApiClient, session: Mock):
        session.request.return_value = make_response(404)

        result = client.save("missing", "single", "New")

        assert result.ok is False
        assert "Not found" in result.reason
        assert session.request.call_count == 1


class TestHealthCheck:
    def test_healthy(self, client: ProjectApiClient, session: Mock):
        session.get.return_value = Mock(ok=True)
        assert client.health_check() is True
        session.get.assert_called_once_with(f"{BASE_URL}/api/health", timeout=5)

    def test_unreachable(self, client: ProjectApiClient, session: Mock):
        session.get.side_effect = RequestException("down")
        assert client.health_check() is False
