"""Tests for the identity-provider adapter."""

import httpx
import pytest

from descgate.config import IdpMode
from descgate.service.identity import (
    CredentialExpired,
    CredentialInvalid,
    CredentialRevoked,
    IdentityProviderUnavailable,
    JWTIdentityProvider,
    identity_from_claims,
)

from conftest import SUBJECT_ID


@pytest.fixture
def provider(runtime):
    return runtime.identity_provider


@pytest.fixture
def jwks_provider(runtime):
    settings = runtime.settings.model_copy(
        update={"idp_mode": IdpMode.JWKS, "idp_jwks_url": "https://idp.example/jwks.json"}
    )
    return JWTIdentityProvider(settings, runtime.store, clock=runtime.clock)


def _patch_transport(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)


class TestClaims:
    def test_identity_from_claims(self):
        identity = identity_from_claims({
            "sub": SUBJECT_ID,
            "aud": ["descgate-test", "other"],
            "iat": 100,
            "exp": 200,
            "email": "buyer@example.com",
            "email_verified": True,
            "firebase": {"sign_in_provider": "google.com"},
            "role": "admin",
            "nested": {"ignored": True},
        })

        assert identity.audience == "descgate-test"
        assert identity.auth_time == 100
        assert identity.sign_in_method == "google.com"
        assert identity.custom_claims == {"role": "admin"}

    def test_email_verified_must_be_true(self):
        assert not identity_from_claims({"sub": "x", "email_verified": "true"}).email_verified


class TestVerify:
    async def test_valid_credential(self, provider, mint):
        identity = await provider.verify(mint(jti="cred-9"))

        assert identity.subject_id == SUBJECT_ID
        assert identity.jti == "cred-9"
        assert identity.issuer == "https://securetoken.google.com/descgate-test"

    async def test_expired_credential(self, provider, mint, clock):
        with pytest.raises(CredentialExpired):
            await provider.verify(mint(issued_at=int(clock.now()) - 7200))

    async def test_wrong_issuer(self, provider, mint):
        with pytest.raises(CredentialInvalid):
            await provider.verify(mint(issuer="https://securetoken.google.com/other"))

    async def test_garbage(self, provider):
        with pytest.raises(CredentialInvalid):
            await provider.verify("definitely-not-a-jwt")

    async def test_revocation_applies_to_earlier_sign_ins(self, provider, mint, clock):
        await provider.revoke_sessions(SUBJECT_ID)

        with pytest.raises(CredentialRevoked):
            await provider.verify(mint(auth_time=int(clock.now()) - 1))

        clock.advance(5)
        assert await provider.verify(mint(), check_revoked=True)

    async def test_revocation_check_can_be_skipped(self, provider, mint, clock):
        await provider.revoke_sessions(SUBJECT_ID)

        identity = await provider.verify(mint(auth_time=int(clock.now()) - 1), check_revoked=False)

        assert identity.subject_id == SUBJECT_ID

    def test_shared_secret_mode_needs_secret(self, runtime):
        settings = runtime.settings.model_copy(update={"idp_shared_secret": None})

        with pytest.raises(RuntimeError):
            JWTIdentityProvider(settings)


class TestJwks:
    async def test_endpoint_error_is_unavailable(self, jwks_provider, monkeypatch):
        _patch_transport(monkeypatch, lambda request: httpx.Response(503))

        with pytest.raises(IdentityProviderUnavailable) as excinfo:
            await jwks_provider.ensure_jwks_available()
        assert excinfo.value.detail == {"status": 503}

    async def test_unreachable_endpoint(self, jwks_provider, monkeypatch, mint):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        _patch_transport(monkeypatch, handler)

        with pytest.raises(IdentityProviderUnavailable):
            await jwks_provider.verify(mint())

    async def test_reachable_endpoint(self, jwks_provider, monkeypatch):
        _patch_transport(monkeypatch, lambda request: httpx.Response(200, json={"keys": []}))

        await jwks_provider.ensure_jwks_available()
