from unittest.mock import MagicMock

import pytest
import requests

from identity_client import IdentityClient, driver_fields_from_profile


def client_returning(payload=None, error=None):
    session = MagicMock(spec=requests.Session)
    response = MagicMock()
    if isinstance(error, requests.HTTPError):
        response.raise_for_status.side_effect = error
    elif error is not None:
        session.get.side_effect = error
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    session.get.return_value = response
    return IdentityClient("http://identity:3000/", timeout=1.5, session=session), session


def test_fetch_profile_forwards_authorization():
    client, session = client_returning({"id": "user-1", "fullName": "Awa"})

    assert client.fetch_profile("Bearer token") == {"id": "user-1", "fullName": "Awa"}
    session.get.assert_called_once_with(
        "http://identity:3000/profiles/me",
        headers={"Authorization": "Bearer token"},
        timeout=1.5,
    )


@pytest.mark.parametrize("payload, error", [
    (None, requests.ConnectionError("refused")),
    (None, requests.Timeout("slow")),
    (None, requests.HTTPError("401 Client Error")),
    (ValueError("not json"), None),
    (["not", "a", "dict"], None),
])
def test_fetch_profile_failures_degrade_to_none(payload, error):
    client, _ = client_returning(payload, error)

    assert client.fetch_profile("Bearer token") is None


@pytest.mark.parametrize("profile, label", [
    ({"id": "u", "fullName": "Awa", "companyName": "Navettes SA", "email": "a@x"}, "Awa"),
    ({"id": "u", "companyName": "Navettes SA", "email": "a@x"}, "Navettes SA"),
    ({"id": "u", "email": "a@x"}, "a@x"),
    ({"id": "u"}, None),
])
def test_driver_label_fallbacks(profile, label):
    fields = driver_fields_from_profile(profile)

    assert fields["driver_id"] == "u"
    assert fields["driver_label"] == label
    assert fields["driver_photo_url"] is None
