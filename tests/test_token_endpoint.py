import base64
import time

import pytest

from oauth.errors import UpstreamConfigurationError, UpstreamRejectedError, UpstreamUnavailableError
from oauth.stores import AUTHORIZATION_CODE_TTL_SECONDS
from tests.helpers import LOOPBACK_REDIRECT, exchange, make_pkce_pair, obtain_code, register


def _basic(client_id: str, client_secret: str) -> dict:
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}


def _refresh(client, refresh_token: str, **extra):
    return client.post("/token", data={"grant_type": "refresh_token", "refresh_token": refresh_token, **extra})


class TestAuthorizationCodeGrant:
    def test_full_flow(self, client, bridge):
        registration = register(client)
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)

        response = exchange(client, registration["client_id"], code, verifier)

        assert response.status_code == 200, response.text
        assert response.headers["cache-control"] == "no-store"
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert body["scope"] == "com.intuit.quickbooks.accounting"

        payload = bridge.tokens.verify_access_token(body["access_token"])
        assert payload.client_id == registration["client_id"]
        assert payload.tenant_id == "9130350000000001"
        assert payload.upstream_access_token == "qb-access-1"

        protected = client.get("/mcp/", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert protected.status_code == 200
        assert protected.json() == {
            "realm_id": "9130350000000001",
            "access_token": "qb-access-1",
            "client_id": registration["client_id"],
        }

    def test_code_cannot_be_redeemed_twice(self, client):
        registration = register(client)
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)

        assert exchange(client, registration["client_id"], code, verifier).status_code == 200
        second = exchange(client, registration["client_id"], code, verifier)

        assert second.status_code == 400
        assert second.json()["error"] == "invalid_grant"

    def test_wrong_verifier_burns_the_code(self, client):
        registration = register(client)
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)

        wrong = exchange(client, registration["client_id"], code, "x" * 43)
        assert wrong.status_code == 400
        assert wrong.json()["error"] == "invalid_grant"

        retry = exchange(client, registration["client_id"], code, verifier)
        assert retry.json()["error"] == "invalid_grant"

    def test_plain_challenge_method(self, client):
        registration = register(client)
        verifier = "plain-verifier-" + "a" * 40
        code = obtain_code(client, registration["client_id"], verifier, method="plain")

        assert exchange(client, registration["client_id"], code, verifier).status_code == 200

    def test_missing_verifier(self, client):
        registration = register(client)
        _, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)

        response = exchange(client, registration["client_id"], code, "")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_redirect_uri_must_match(self, client):
        other = "http://localhost:5000/cb"
        registration = register(client, redirect_uris=[LOOPBACK_REDIRECT, other])
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)

        response = exchange(client, registration["client_id"], code, verifier, redirect_uri=other)

        assert response.json()["error"] == "invalid_grant"

    def test_code_is_bound_to_client(self, client):
        first = register(client)
        second = register(client)
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, first["client_id"], challenge)

        response = exchange(client, second["client_id"], code, verifier)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_unknown_code(self, client):
        registration = register(client)
        response = exchange(client, registration["client_id"], "f" * 64, "v" * 43)

        assert response.json()["error"] == "invalid_grant"

    def test_unknown_client(self, client):
        response = exchange(client, "nobody", "f" * 64, "v" * 43)

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"
        assert response.headers["www-authenticate"].startswith("Basic")

    def test_json_body_is_accepted(self, client):
        registration = register(client)
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)

        response = client.post("/token", json={
            "grant_type": "authorization_code",
            "client_id": registration["client_id"],
            "code": code,
            "redirect_uri": LOOPBACK_REDIRECT,
            "code_verifier": verifier,
        })

        assert response.status_code == 200

    def test_unsupported_grant_type(self, client):
        response = client.post("/token", data={"grant_type": "client_credentials"})

        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_missing_grant_type(self, client):
        response = client.post("/token", data={})

        assert response.json()["error"] == "unsupported_grant_type"

    def test_malformed_multipart_body(self, client):
        response = client.post("/token", content=b"garbage",
                               headers={"Content-Type": "multipart/form-data; boundary=x"})

        assert response.status_code == 400
        assert response.json() == {"error": "invalid_request", "error_description": "Malformed request body"}
        assert response.headers["cache-control"] == "no-store"

    def test_malformed_json_body(self, client):
        response = client.post("/token", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_code_expires_after_ten_minutes(self, client, bridge):
        registration = register(client)
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)
        bridge.codes._clock = lambda: time.time() + AUTHORIZATION_CODE_TTL_SECONDS

        response = exchange(client, registration["client_id"], code, verifier)

        assert AUTHORIZATION_CODE_TTL_SECONDS == 600
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_code_is_live_just_before_expiry(self, client, bridge):
        registration = register(client)
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)
        bridge.codes._clock = lambda: time.time() + AUTHORIZATION_CODE_TTL_SECONDS - 30

        assert exchange(client, registration["client_id"], code, verifier).status_code == 200


class TestConfidentialClients:
    @pytest.fixture
    def confidential(self, client):
        return register(client, token_endpoint_auth_method="client_secret_basic")

    def _code(self, client, registration):
        verifier, challenge = make_pkce_pair()
        return obtain_code(client, registration["client_id"], challenge), verifier

    def test_basic_auth(self, client, confidential):
        code, verifier = self._code(client, confidential)

        response = client.post("/token", data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": LOOPBACK_REDIRECT,
            "code_verifier": verifier,
        }, headers=_basic(confidential["client_id"], confidential["client_secret"]))

        assert response.status_code == 200, response.text

    def test_secret_in_body(self, client, confidential):
        code, verifier = self._code(client, confidential)

        response = exchange(client, confidential["client_id"], code, verifier,
                            client_secret=confidential["client_secret"])

        assert response.status_code == 200

    def test_missing_secret(self, client, confidential):
        code, verifier = self._code(client, confidential)

        response = exchange(client, confidential["client_id"], code, verifier)

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    def test_wrong_secret_leaves_code_usable(self, client, confidential):
        code, verifier = self._code(client, confidential)

        wrong = exchange(client, confidential["client_id"], code, verifier, client_secret="nope")
        assert wrong.status_code == 401

        right = exchange(client, confidential["client_id"], code, verifier,
                         client_secret=confidential["client_secret"])
        assert right.status_code == 200

    def test_malformed_basic_header(self, client):
        response = client.post("/token", data={"grant_type": "authorization_code"},
                               headers={"Authorization": "Basic %%%"})

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"


class TestRefreshTokenGrant:
    @pytest.fixture
    def issued(self, client):
        registration = register(client)
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)
        return registration, exchange(client, registration["client_id"], code, verifier).json()

    def test_refresh_rotates_upstream_tokens(self, client, bridge, upstream, issued):
        registration, tokens = issued

        response = _refresh(client, tokens["refresh_token"], client_id=registration["client_id"])

        assert response.status_code == 200, response.text
        assert response.headers["cache-control"] == "no-store"
        body = response.json()
        assert upstream.refreshed == ["qb-refresh-1"]

        payload = bridge.tokens.verify_access_token(body["access_token"])
        assert payload.upstream_access_token == "qb-access-r1"
        assert payload.tenant_id == "9130350000000001"
        assert bridge.tokens.verify_refresh_token(body["refresh_token"]).upstream_refresh_token == "qb-refresh-r1"

    def test_refresh_without_client_id(self, client, issued):
        _, tokens = issued
        assert _refresh(client, tokens["refresh_token"]).status_code == 200

    def test_refresh_survives_registry_loss(self, client, bridge, issued):
        registration, tokens = issued
        bridge.clients.evict(registration["client_id"])

        assert _refresh(client, tokens["refresh_token"]).status_code == 200

    def test_access_token_is_not_a_refresh_token(self, client, upstream, issued):
        _, tokens = issued

        response = _refresh(client, tokens["access_token"])

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"
        assert upstream.refreshed == []

    def test_garbage_refresh_token(self, client):
        assert _refresh(client, "garbage").json()["error"] == "invalid_grant"

    def test_missing_refresh_token(self, client):
        response = client.post("/token", data={"grant_type": "refresh_token"})
        assert response.json()["error"] == "invalid_request"

    def test_client_mismatch(self, client, issued):
        _, tokens = issued
        other = register(client)

        response = _refresh(client, tokens["refresh_token"], client_id=other["client_id"])

        assert response.json()["error"] == "invalid_grant"

    def test_upstream_rejection_is_invalid_grant(self, client, upstream, issued):
        _, tokens = issued
        upstream.refresh_error = UpstreamRejectedError("invalid_grant")

        response = _refresh(client, tokens["refresh_token"])

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    @pytest.mark.parametrize("error", [
        UpstreamUnavailableError("timeout"),
        UpstreamConfigurationError("not configured"),
    ])
    def test_upstream_failure_is_server_error(self, client, upstream, issued, error):
        _, tokens = issued
        upstream.refresh_error = error

        response = _refresh(client, tokens["refresh_token"])

        assert response.status_code == 500
        assert response.json()["error"] == "server_error"

    def test_confidential_client_refresh_requires_secret(self, client):
        registration = register(client, token_endpoint_auth_method="client_secret_post")
        verifier, challenge = make_pkce_pair()
        code = obtain_code(client, registration["client_id"], challenge)
        tokens = exchange(client, registration["client_id"], code, verifier,
                          client_secret=registration["client_secret"]).json()

        assert _refresh(client, tokens["refresh_token"]).status_code == 401
        ok = _refresh(client, tokens["refresh_token"], client_secret=registration["client_secret"])
        assert ok.status_code == 200
