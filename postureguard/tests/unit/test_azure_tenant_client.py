from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from postureguard.core.config import get_settings
from postureguard.core.errors import AuthenticationError, ConfigurationError, PhaseFailure, TransientProviderError
from postureguard.providers.directory.azure_tenant import (
    MANAGEMENT_AUDIENCE,
    GRAPH_AUDIENCE,
    NSG_TYPE,
    AzureAppCredentials,
    AzureTenantClient,
    ClientCredentialsTokenSource,
    normalize_application,
    normalize_assessment,
    normalize_resource,
    normalize_user,
)
from postureguard.providers.directory.factory import build_provider
from postureguard.providers.directory.http import ProviderHttp
from postureguard.services.resilience import RetryPolicy
from postureguard.tests.utils.fakes import RecordingSleep, StaticTokenSource, mock_client


SUBSCRIPTION = "sub-1"
NSG_ID = f"/subscriptions/{SUBSCRIPTION}/resourceGroups/Net-RG/providers/{NSG_TYPE}/edge-nsg"


def _tenant(handler, tokens: StaticTokenSource | None = None) -> AzureTenantClient:
    http = ProviderHttp(
        integration="azure",
        token_source=tokens or StaticTokenSource(),
        client=mock_client(handler),
        policy=RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1),
        sleep=RecordingSleep(),
    )
    return AzureTenantClient(subscription_id=SUBSCRIPTION, http=http, settings=get_settings())


async def _collect(iterator) -> list[dict]:
    return [item async for item in iterator]


async def test_users_follow_next_link_and_skip_password_method() -> None:
    methods = {
        "u1": httpx.Response(
            200,
            json={
                "value": [
                    {"@odata.type": "#microsoft.graph.passwordAuthenticationMethod"},
                    {"@odata.type": "#microsoft.graph.microsoftAuthenticatorAuthenticationMethod"},
                ]
            },
        ),
        "u2": httpx.Response(403, json={"error": {"code": "Authorization_RequestDenied"}}),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1.0/users":
            if "$skiptoken" in request.url.params:
                return httpx.Response(
                    200,
                    json={"value": [{"id": "u2", "userPrincipalName": "guest#EXT#@tenant", "accountEnabled": False, "userType": "Guest"}]},
                )
            return httpx.Response(
                200,
                json={
                    "value": [{"id": "u1", "mail": "ada@example.com", "accountEnabled": True, "userType": "Member"}],
                    "@odata.nextLink": "https://graph.microsoft.com/v1.0/users?$skiptoken=abc",
                },
            )
        return methods[path.split("/")[3]]

    tokens = StaticTokenSource()
    users = [normalize_user(user) for user in await _collect(_tenant(handler, tokens).list_users())]

    assert [user["external_id"] for user in users] == ["u1", "u2"]
    assert users[0]["mfa_enrolled"] is True
    assert users[0]["mfa_methods"] == ["microsoftAuthenticatorAuthenticationMethod"]
    assert users[1]["mfa_enrolled"] is False
    assert users[1]["suspended"] is True
    assert users[1]["account_type"] == "guest"
    assert set(tokens.audiences) == {GRAPH_AUDIENCE}


async def test_group_member_count_uses_count_endpoint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1.0/groups":
            return httpx.Response(200, json={"value": [{"id": "g1", "displayName": "Ops", "securityEnabled": True}]})
        assert request.url.path == "/v1.0/groups/g1/members/$count"
        assert request.headers["ConsistencyLevel"] == "eventual"
        return httpx.Response(200, text="7")

    groups = await _collect(_tenant(handler).list_groups())
    assert groups[0]["memberCount"] == 7


async def test_resources_merge_security_properties_case_insensitively() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith(f"/providers/{NSG_TYPE}"):
            rule = {
                "name": "allow-rdp",
                "properties": {
                    "direction": "Inbound",
                    "access": "Allow",
                    "protocol": "Tcp",
                    "sourceAddressPrefix": "*",
                    "destinationPortRange": "3389",
                    "priority": 100,
                    "description": "dropped",
                },
            }
            return httpx.Response(200, json={"value": [{"id": NSG_ID.upper(), "properties": {"securityRules": [rule]}}]})
        if path.endswith("/providers/Microsoft.Storage/storageAccounts"):
            return httpx.Response(200, json={"value": []})
        assert path == f"/subscriptions/{SUBSCRIPTION}/resources"
        assert request.url.params["api-version"]
        return httpx.Response(
            200,
            json={
                "value": [
                    {"id": NSG_ID, "name": "edge-nsg", "type": NSG_TYPE, "location": "westeurope"},
                    {"id": f"/subscriptions/{SUBSCRIPTION}/resourceGroups/App/providers/Microsoft.Web/sites/api", "type": "Microsoft.Web/sites"},
                ]
            },
        )

    tokens = StaticTokenSource()
    resources = [normalize_resource(item) for item in await _collect(_tenant(handler, tokens).list_resources())]

    nsg, site = resources
    assert nsg["resource_group"] == "Net-RG"
    rule = nsg["properties"]["securityRules"][0]
    assert rule["properties"]["destinationPortRange"] == "3389"
    assert "description" not in rule["properties"]
    assert site["properties"] is None
    assert set(tokens.audiences) == {MANAGEMENT_AUDIENCE}


def test_application_uses_earliest_credential_expiry() -> None:
    app = normalize_application(
        {
            "appId": "app-1",
            "displayName": "Payroll",
            "passwordCredentials": [{"endDateTime": "2027-01-01T00:00:00Z"}],
            "keyCredentials": [{"endDateTime": "2026-11-01T00:00:00.1234567Z"}],
            "requiredResourceAccess": [{"resourceAppId": "graph", "resourceAccess": [{"id": "scope-1"}]}],
        }
    )
    assert app["credentials_expire_at"] == datetime(2026, 11, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)
    assert app["password_credential_count"] == 1
    assert app["key_credential_count"] == 1
    assert app["scopes"] == ["graph/scope-1"]
    assert normalize_application({"displayName": "no app id"}) is None


def test_assessment_reads_status_and_category() -> None:
    row = normalize_assessment(
        {
            "id": "/subscriptions/sub-1/providers/Microsoft.Security/assessments/a-1",
            "properties": {
                "displayName": "MFA should be enabled",
                "status": {"code": "Unhealthy", "severity": "High"},
                "metadata": {"categories": ["IdentityAndAccess"]},
                "resourceDetails": {"Id": "/subscriptions/sub-1"},
            },
        }
    )
    assert row["external_id"] == "a-1"
    assert (row["status"], row["severity"], row["category"]) == ("Unhealthy", "High", "IdentityAndAccess")


async def test_client_credentials_scopes_per_audience() -> None:
    scopes: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/tenant-1/oauth2/v2.0/token"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["client_credentials"]
        scopes.append(form["scope"][0])
        return httpx.Response(200, json={"access_token": f"tok-{len(scopes)}", "expires_in": 3600})

    source = ClientCredentialsTokenSource(
        AzureAppCredentials(tenant_id="tenant-1", client_id="c", client_secret="s", subscription_id=SUBSCRIPTION),
        client=mock_client(handler),
        clock=lambda: 1_700_000_000.0,
    )
    assert await source.get_token(GRAPH_AUDIENCE) == "tok-1"
    assert await source.get_token(GRAPH_AUDIENCE) == "tok-1"
    assert await source.get_token(MANAGEMENT_AUDIENCE) == "tok-2"
    assert scopes == ["https://graph.microsoft.com/.default", "https://management.azure.com/.default"]


async def test_invalid_client_secret_rejects_credential() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_client"})

    source = ClientCredentialsTokenSource(
        AzureAppCredentials(tenant_id="tenant-1", client_id="c", client_secret="bad", subscription_id=SUBSCRIPTION),
        client=mock_client(handler),
    )
    with pytest.raises(AuthenticationError) as exc_info:
        await source.get_token(GRAPH_AUDIENCE)
    assert exc_info.value.credential_rejected is True
    assert "invalid_client" in str(exc_info.value)


async def test_token_network_error_is_retried_as_transient() -> None:
    token_calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth2/v2.0/token"):
            token_calls.append(1)
            if len(token_calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(200, json={"value": [{"id": "u1"}]})

    client = mock_client(handler)
    sleep = RecordingSleep()
    http = ProviderHttp(
        integration="azure",
        token_source=ClientCredentialsTokenSource(
            AzureAppCredentials(tenant_id="tenant-1", client_id="c", client_secret="s", subscription_id=SUBSCRIPTION),
            client=client,
        ),
        client=client,
        policy=RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1),
        sleep=sleep,
    )

    payload = await http.get_json(f"{get_settings().azure_graph_base_url}/users", audience=GRAPH_AUDIENCE)
    assert payload == {"value": [{"id": "u1"}]}
    assert len(token_calls) == 2
    assert len(sleep.delays) == 1


async def test_token_network_error_surfaces_as_transient_after_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    source = ClientCredentialsTokenSource(
        AzureAppCredentials(tenant_id="tenant-1", client_id="c", client_secret="s", subscription_id=SUBSCRIPTION),
        client=mock_client(handler),
    )
    with pytest.raises(TransientProviderError, match="token endpoint network error: ReadTimeout"):
        await source.get_token(GRAPH_AUDIENCE)


async def test_non_json_body_is_a_phase_failure() -> None:
    tenant = _tenant(lambda request: httpx.Response(200, text="<html>gateway login</html>"))
    with pytest.raises(PhaseFailure, match="azure returned a non-JSON body"):
        await _collect(tenant.list_groups())


def test_build_provider_reports_missing_credential_fields() -> None:
    with pytest.raises(ConfigurationError, match="azure credentials are incomplete"):
        build_provider("azure", {"tenantId": "t", "clientId": "c"})
    with pytest.raises(ConfigurationError, match="Unsupported directory provider"):
        build_provider("okta", {})


def test_build_provider_accepts_camel_case_azure_keys() -> None:
    provider = build_provider(
        "azure",
        {"tenantId": "t", "clientId": "c", "clientSecret": "s", "subscriptionId": SUBSCRIPTION},
        client=mock_client(lambda request: httpx.Response(500)),
    )
    assert provider.name == "azure"
    assert [phase.category for phase in provider.phases()][0] == "accounts"
