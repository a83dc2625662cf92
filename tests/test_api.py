from unittest.mock import MagicMock, patch

import pytest
import requests

from soaklauncher.api import ProvisioningClient
from soaklauncher.errors import ProvisioningApiError

INSTANCE_PAYLOAD = {
    "id": "1234",
    "name": "soak-debian-11-abcd",
    "status": "RUNNING",
    "networkInterfaces": [{"networkIP": "10.0.0.5", "accessConfigs": [{"natIP": "198.51.100.7"}]}],
}


def make_response(status_code=200, payload=None, text=""):
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.content = b"{}" if payload is not None else text.encode()
    response.text = text
    if payload is not None:
        response.json.return_value = payload
    else:
        response.json.side_effect = ValueError("no json")
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


@pytest.fixture
def client():
    return ProvisioningClient(api_key="token", project="my_project", zone="us-central1-b", base_url="https://api.test/v1")


class TestInit:
    def test_sets_bearer_header(self, client):
        assert client.session.headers["Authorization"] == "Bearer token"
        assert client.base_url == "https://api.test/v1/"

    @pytest.mark.parametrize("field", ["api_key", "project", "zone", "base_url"])
    def test_requires_fields(self, field):
        kwargs = {"api_key": "token", "project": "p", "zone": "z", "base_url": "https://api.test", field: ""}
        with pytest.raises(ValueError, match=field):
            ProvisioningClient(**kwargs)


def test_create_instance_posts_payload(client):
    with patch.object(client.session, "request", return_value=make_response(payload=INSTANCE_PAYLOAD)) as mock_request:
        instance = client.create_instance(
            name="soak-debian-11-abcd",
            image_family="debian-11",
            machine_type="e2-standard-16",
            disk_size_gb=4000,
            labels={"ttl": "30"},
            metadata={"osconfig-disabled-features": "tasks"},
        )

    method, url = mock_request.call_args.args
    payload = mock_request.call_args.kwargs["json"]
    assert method == "POST"
    assert url == "https://api.test/v1/projects/my_project/zones/us-central1-b/instances/"
    assert payload["labels"] == {"ttl": "30"}
    assert payload["diskSizeGb"] == 4000
    assert payload["metadata"]["items"] == [{"key": "osconfig-disabled-features", "value": "tasks"}]

    assert instance.id == "1234"
    assert instance.address == "198.51.100.7"


def test_create_instance_validates_disk_size(client):
    with pytest.raises(ValueError, match="disk_size_gb"):
        client.create_instance("vm", "debian-11", "e2-standard-16", 0)


def test_http_error_is_formatted(client):
    response = make_response(403, payload={"error": {"message": "Quota exceeded"}})
    with patch.object(client.session, "request", return_value=response):
        with pytest.raises(ProvisioningApiError, match="status 403: Quota exceeded"):
            client.get_instance("vm")


def test_http_error_without_json(client):
    response = make_response(500, text="upstream exploded")
    with patch.object(client.session, "request", return_value=response):
        with pytest.raises(ProvisioningApiError, match="upstream exploded"):
            client.get_instance("vm")


def test_connection_error_is_wrapped(client):
    with patch.object(client.session, "request", side_effect=requests.ConnectionError("dns failure")):
        with pytest.raises(ProvisioningApiError, match="dns failure"):
            client.get_instance("vm")


@patch("soaklauncher.api.time.sleep")
def test_wait_until_running_polls(mock_sleep, client):
    states = [dict(INSTANCE_PAYLOAD, status="STAGING"), INSTANCE_PAYLOAD]
    responses = [make_response(payload=p) for p in states]
    with patch.object(client.session, "request", side_effect=responses):
        instance = client.wait_until_running("soak-debian-11-abcd", timeout=60, poll_interval=2)

    assert instance.status == "RUNNING"
    mock_sleep.assert_called_once_with(2)


@patch("soaklauncher.api.time.sleep")
def test_wait_until_running_fails_on_terminated(mock_sleep, client):
    response = make_response(payload=dict(INSTANCE_PAYLOAD, status="TERMINATED"))
    with patch.object(client.session, "request", return_value=response):
        with pytest.raises(ProvisioningApiError, match="TERMINATED"):
            client.wait_until_running("soak-debian-11-abcd")
    mock_sleep.assert_not_called()
