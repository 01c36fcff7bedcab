"""Tests for the GraphQL client, with the HTTP session mocked out."""

from unittest.mock import MagicMock

import pytest
import requests

from mirror.config import InstanceConfig
from mirror.errors import UpstreamShapeError, UpstreamUnavailableError
from mirror.source import StashClient, _changed_filter


def _response(status=200, body=None, json_error=False):
    response = MagicMock()
    response.status_code = status
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = body
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} error")
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    instance = InstanceConfig(id="main", url="http://stash.local:9999/", api_key="secret")
    return StashClient(instance, timeout=5, session=session)


def test_graphql_url_and_api_key(client, session):
    """Test the GraphQL endpoint and the ApiKey header."""
    session.post.return_value = _response(body={"data": {"findScenes": {"count": 0, "scenes": []}}})

    client.find_page("scene", 1, 50)

    args, kwargs = session.post.call_args
    assert args[0] == "http://stash.local:9999/graphql"
    assert kwargs["timeout"] == 5
    assert session.headers.update.call_args_list[-1].args[0] == {"ApiKey": "secret"}


def test_find_page_sends_paging_and_change_filter(client, session):
    """Test that paged finds send paging and the updated_at filter."""
    session.post.return_value = _response(
        body={"data": {"findScenes": {"count": 7, "scenes": [{"id": "1"}, {"id": "2"}]}}}
    )

    total, items = client.find_page("scene", 2, 2, updated_since="2025-01-01T10:00:00Z")

    assert total == 7
    assert [i["id"] for i in items] == ["1", "2"]
    variables = session.post.call_args.kwargs["json"]["variables"]
    assert variables["filter"] == {"page": 2, "per_page": 2, "sort": "id", "direction": "ASC"}
    assert variables["entity_filter"] == {
        "updated_at": {"modifier": "GREATER_THAN", "value": "2025-01-01T10:00:00.999"}
    }


def test_connection_error_is_unavailable(client, session):
    """Test that connection errors raise UpstreamUnavailableError."""
    session.post.side_effect = requests.exceptions.ConnectionError("refused")

    with pytest.raises(UpstreamUnavailableError):
        client.find_page("scene", 1, 10)


def test_server_error_is_unavailable(client, session):
    """Test that 5xx responses raise UpstreamUnavailableError."""
    session.post.return_value = _response(status=502)

    with pytest.raises(UpstreamUnavailableError):
        client.find_ids("scene", 1, 10)


def test_client_error_is_shape_error(client, session):
    """Test that 4xx responses raise UpstreamShapeError."""
    session.post.return_value = _response(status=401)

    with pytest.raises(UpstreamShapeError):
        client.find_ids("scene", 1, 10)


def test_graphql_errors_are_shape_errors(client, session):
    """Test that GraphQL errors raise UpstreamShapeError."""
    session.post.return_value = _response(body={"errors": [{"message": "Unknown field"}], "data": None})

    with pytest.raises(UpstreamShapeError, match="Unknown field"):
        client.find_page("tag", 1, 10)


def test_invalid_json_and_missing_keys(client, session):
    """Test that bad JSON and missing keys raise UpstreamShapeError."""
    session.post.return_value = _response(json_error=True)
    with pytest.raises(UpstreamShapeError):
        client.find_page("tag", 1, 10)

    session.post.return_value = _response(body={"data": {"findTags": {"count": 1}}})
    with pytest.raises(UpstreamShapeError):
        client.find_page("tag", 1, 10)


def test_find_ids_tolerates_missing_count(client, session):
    """Test that an id listing without a count still returns its ids."""
    session.post.return_value = _response(body={"data": {"findTags": {"tags": [{"id": 3}, {"id": "4"}]}}})

    count, ids = client.find_ids("tag", 1, 10)

    assert count is None
    assert ids == ["3", "4"]


def test_count_changed_since_requires_count(client, session):
    """Test that change counts ask for no rows and fail without a count."""
    session.post.return_value = _response(body={"data": {"findScenes": {"count": 12, "scenes": []}}})
    assert client.count_changed_since("scene", "2025-01-01T00:00:00Z") == 12
    assert session.post.call_args.kwargs["json"]["variables"]["filter"]["per_page"] == 0

    session.post.return_value = _response(body={"data": {"findScenes": {"scenes": []}}})
    with pytest.raises(UpstreamShapeError):
        client.count_changed_since("scene", "2025-01-01T00:00:00Z")


def test_image_visual_files_become_files(client, session):
    """Test that image visual files are read as files."""
    session.post.return_value = _response(
        body={"data": {"findImages": {"count": 1, "images": [
            {"id": "9", "visual_files": [{"path": "/a.jpg", "width": 10}, None]}
        ]}}}
    )

    _, items = client.find_page("image", 1, 10)

    assert items[0]["files"] == [{"path": "/a.jpg", "width": 10}]
    assert "visual_files" not in items[0]


def test_no_change_filter_without_timestamp():
    """Test that no updated_at filter is sent without a timestamp."""
    assert _changed_filter(None) is None
    assert _changed_filter("") is None
