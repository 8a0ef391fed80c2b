"""
Unit tests for the ACME protocol client.

Runs the full issuance flow against an in-process mock certificate
authority served through an httpx mock transport.
"""

import json
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from core.acme_client import ACMEClient, generate_csr, get_acme_client, parse_certificate_expiry
from core.acme_errors import DomainValidationError
from core.cert_manager import CertManager
from core.challenges import HTTP01Challenge
from core.jws import b64url_decode
from models.certificate import AcmeEnvironment, ChallengeType
from models.domain import Domain, SSLStatus

from conftest import make_certificate_pem

CA = "https://ca.test"
DIRECTORY_URL = f"{CA}/directory"
NEW_NONCE = f"{CA}/new-nonce"
NEW_ACCOUNT = f"{CA}/new-acct"
NEW_ORDER = f"{CA}/new-order"
ACCOUNT_URL = f"{CA}/acct/1"
ORDER_URL = f"{CA}/order/1"
AUTHZ_URL = f"{CA}/authz/1"
CHALLENGE_URL = f"{CA}/chall/1"
FINALIZE_URL = f"{CA}/order/1/finalize"
CERT_URL = f"{CA}/cert/1"
TOKEN = "tok-abc_123"


class MockCA:
    """Scripted certificate authority for one order with one authorization."""

    def __init__(
        self,
        cert_pem: str,
        authz_statuses=("pending", "valid"),
        order_statuses=("valid",),
        challenge_error=None,
        account_location=True,
        webroot=None,
        send_nonce=True,
        order_problem=None,
    ):
        self.cert_pem = cert_pem
        self.authz_statuses = list(authz_statuses)
        self.order_statuses = list(order_statuses)
        self.challenge_error = challenge_error
        self.account_location = account_location
        self.webroot = webroot
        self.send_nonce = send_nonce
        self.order_problem = order_problem
        self.requests = []
        self.nonce_heads = 0
        self.counter = 0
        self.posts = []
        self.challenge_file_seen = None

    def _nonce(self) -> str:
        self.counter += 1
        nonce = f"nonce-{self.counter}"
        return nonce

    def _next(self, statuses):
        return statuses.pop(0) if len(statuses) > 1 else statuses[0]

    def directory(self, request):
        return httpx.Response(200, json={
            "newNonce": NEW_NONCE,
            "newAccount": NEW_ACCOUNT,
            "newOrder": NEW_ORDER,
            "revokeCert": f"{CA}/revoke",
            "keyChange": f"{CA}/key-change",
        })

    def new_nonce(self, request):
        self.nonce_heads += 1
        if not self.send_nonce:
            return httpx.Response(200)
        return httpx.Response(200, headers={"Replay-Nonce": self._nonce()})

    def handle(self, request):
        self.requests.append((request.method, str(request.url)))
        if request.method == "GET" and str(request.url) == DIRECTORY_URL:
            return self.directory(request)
        if request.method == "HEAD" and str(request.url) == NEW_NONCE:
            return self.new_nonce(request)
        return self.post(request)

    def _order(self, status):
        body = {
            "status": status,
            "identifiers": [{"type": "dns", "value": "example.com"}],
            "authorizations": [AUTHZ_URL],
            "finalize": FINALIZE_URL,
        }
        if status == "valid":
            body["certificate"] = CERT_URL
        return body

    def post(self, request):
        body = json.loads(request.content)
        protected = json.loads(b64url_decode(body["protected"]))
        payload = json.loads(b64url_decode(body["payload"])) if body["payload"] else None
        url = str(request.url)
        self.posts.append({"url": url, "protected": protected, "payload": payload})

        headers = {"Replay-Nonce": self._nonce()}

        if url == NEW_ACCOUNT:
            if self.account_location:
                headers["Location"] = ACCOUNT_URL
            return httpx.Response(201, json={"status": "valid"}, headers=headers)

        if url == NEW_ORDER and self.order_problem:
            return httpx.Response(403, json=self.order_problem, headers=headers)

        if url == NEW_ORDER:
            headers["Location"] = ORDER_URL
            return httpx.Response(201, json=self._order("pending"), headers=headers)

        if url == AUTHZ_URL:
            status = self._next(self.authz_statuses)
            challenge = {"type": "http-01", "url": CHALLENGE_URL, "token": TOKEN, "status": status}
            if status == "invalid" and self.challenge_error:
                challenge["error"] = {"type": "urn:ietf:params:acme:error:connection", "detail": self.challenge_error}
            return httpx.Response(200, json={
                "status": status,
                "identifier": {"type": "dns", "value": "example.com"},
                "challenges": [
                    challenge,
                    {"type": "dns-01", "url": f"{CA}/chall/2", "token": "dns-token", "status": "pending"},
                ],
            }, headers=headers)

        if url == CHALLENGE_URL:
            if self.webroot is not None:
                self.challenge_file_seen = (self.webroot / ".well-known" / "acme-challenge" / TOKEN).exists()
            return httpx.Response(200, json={"type": "http-01", "status": "processing"}, headers=headers)

        if url == FINALIZE_URL:
            return httpx.Response(200, json=self._order("processing"), headers=headers)

        if url == ORDER_URL:
            return httpx.Response(200, json=self._order(self._next(self.order_statuses)), headers=headers)

        if url == CERT_URL:
            return httpx.Response(
                200, text=self.cert_pem, headers={**headers, "Content-Type": "application/pem-certificate-chain"}
            )

        return httpx.Response(404, json={"type": "urn:ietf:params:acme:error:malformed", "detail": "unknown"})


@pytest.fixture
def store():
    account_store = MagicMock()
    account_store.get = AsyncMock(return_value=None)
    account_store.save = AsyncMock()
    return account_store


@pytest.fixture
def expiry():
    return datetime.utcnow().replace(microsecond=0) + timedelta(days=90)


def _client(store, ca=None, **kwargs):
    return ACMEClient(
        environment=AcmeEnvironment.STAGING,
        email="ops@example.com",
        directory_url=DIRECTORY_URL,
        account_store=store,
        poll_attempts=kwargs.pop("poll_attempts", 5),
        poll_interval=0,
        transport=httpx.MockTransport(ca.handle) if ca else None,
        **kwargs,
    )


class TestRequestCertificate:
    """Test the end-to-end issuance flow."""

    @pytest.mark.asyncio
    async def test_happy_path_issues_certificate(self, store, tmp_path, expiry):
        cert_pem = make_certificate_pem("example.com", expiry)
        ca = MockCA(cert_pem, webroot=tmp_path)
        client = _client(store, ca)

        result = await client.request_certificate(
            ["example.com"], ChallengeType.HTTP_01, strategy=HTTP01Challenge(webroot=str(tmp_path))
        )

        assert result.success is True, result.error
        assert result.certificate == cert_pem
        assert "PRIVATE KEY" in result.private_key
        assert result.expires_at == expiry
        assert result.error is None

        # Challenge file present while the CA validated, removed afterwards
        assert ca.challenge_file_seen is True
        assert not (tmp_path / ".well-known" / "acme-challenge" / TOKEN).exists()

    @pytest.mark.asyncio
    async def test_request_sequence_and_payloads(self, store, tmp_path):
        ca = MockCA(make_certificate_pem())
        client = _client(store, ca)

        await client.request_certificate(["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path)))

        urls = [p["url"] for p in ca.posts]
        assert urls == [
            NEW_ACCOUNT, NEW_ORDER, AUTHZ_URL, CHALLENGE_URL, AUTHZ_URL, FINALIZE_URL, ORDER_URL, CERT_URL
        ]

        account = ca.posts[0]
        assert account["payload"] == {"termsOfServiceAgreed": True, "contact": ["mailto:ops@example.com"]}
        assert "jwk" in account["protected"]

        for post in ca.posts[1:]:
            assert post["protected"]["kid"] == ACCOUNT_URL
            assert post["protected"]["url"] == post["url"]

        assert ca.posts[1]["payload"] == {"identifiers": [{"type": "dns", "value": "example.com"}]}
        assert ca.posts[2]["payload"] is None  # POST-as-GET
        assert ca.posts[3]["payload"] == {}  # challenge ready
        assert "csr" in ca.posts[5]["payload"]

    @pytest.mark.asyncio
    async def test_nonces_are_threaded_and_never_reused(self, store, tmp_path):
        ca = MockCA(make_certificate_pem())
        client = _client(store, ca)

        await client.request_certificate(["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path)))

        used = [p["protected"]["nonce"] for p in ca.posts]
        assert len(used) == len(set(used))
        # First signed request uses the HEAD nonce, each later one the previous response's nonce
        assert used[0] == "nonce-1"
        assert used[1:] == [f"nonce-{i}" for i in range(2, len(used) + 1)]
        assert ca.nonce_heads == 1

    @pytest.mark.asyncio
    async def test_account_persisted_after_registration(self, store, tmp_path):
        ca = MockCA(make_certificate_pem())
        client = _client(store, ca)

        await client.request_certificate(["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path)))

        store.save.assert_awaited_once()
        saved = store.save.await_args.args[0]
        assert saved.account_url == ACCOUNT_URL
        assert saved.environment == AcmeEnvironment.STAGING
        assert "PRIVATE KEY" in saved.private_key_pem

    @pytest.mark.asyncio
    async def test_key_not_persisted_without_account_url(self, store, tmp_path):
        ca = MockCA(make_certificate_pem(), account_location=False)
        client = _client(store, ca)

        result = await client.request_certificate(
            ["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path))
        )

        assert result.success is False
        assert "account URL" in result.error
        store.save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reuses_persisted_account(self, store, tmp_path):
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.asymmetric import ec
        from models.certificate import ACMEAccount

        key = ec.generate_private_key(ec.SECP256R1())
        pem = key.private_bytes(
            serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
        ).decode()
        store.get = AsyncMock(return_value=ACMEAccount(
            environment=AcmeEnvironment.STAGING, account_url=ACCOUNT_URL, private_key_pem=pem
        ))
        ca = MockCA(make_certificate_pem())
        client = _client(store, ca)

        result = await client.request_certificate(
            ["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path))
        )

        assert result.success is True
        assert NEW_ACCOUNT not in [p["url"] for p in ca.posts]
        store.save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_authorization_reports_ca_detail(self, store, tmp_path):
        ca = MockCA(
            make_certificate_pem(),
            authz_statuses=("pending", "invalid"),
            challenge_error="Connection refused",
        )
        client = _client(store, ca)

        result = await client.request_certificate(
            ["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path))
        )

        assert result.success is False
        assert "Connection refused" in result.error
        assert result.certificate is None
        assert result.private_key is None
        assert FINALIZE_URL not in [p["url"] for p in ca.posts]
        assert not (tmp_path / ".well-known" / "acme-challenge" / TOKEN).exists()

    @pytest.mark.asyncio
    async def test_authorization_poll_timeout(self, store, tmp_path):
        ca = MockCA(make_certificate_pem(), authz_statuses=("pending",))
        client = _client(store, ca, poll_attempts=3)

        result = await client.request_certificate(
            ["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path))
        )

        assert result.success is False
        assert "timed out" in result.error
        # One initial fetch plus three polls
        assert [p["url"] for p in ca.posts].count(AUTHZ_URL) == 4

    @pytest.mark.asyncio
    async def test_order_invalid(self, store, tmp_path):
        ca = MockCA(make_certificate_pem(), order_statuses=("invalid",))
        client = _client(store, ca)

        result = await client.request_certificate(
            ["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path))
        )

        assert result.success is False
        assert "Order failed" in result.error

    @pytest.mark.asyncio
    async def test_order_poll_timeout(self, store, tmp_path):
        ca = MockCA(make_certificate_pem(), order_statuses=("processing",))
        client = _client(store, ca, poll_attempts=2)

        result = await client.request_certificate(
            ["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path))
        )

        assert result.success is False
        assert "Order timed out" in result.error

    @pytest.mark.asyncio
    async def test_invalid_domain_makes_no_requests(self, store):
        ca = MockCA(make_certificate_pem())
        client = _client(store, ca)

        result = await client.request_certificate(["bad..example.com"])

        assert result.success is False
        assert "Invalid domain names" in result.error
        assert ca.requests == []

    @pytest.mark.asyncio
    async def test_missing_nonce_is_protocol_error(self, store, tmp_path):
        ca = MockCA(make_certificate_pem(), send_nonce=False)
        client = _client(store, ca)

        result = await client.request_certificate(
            ["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path))
        )

        assert result.success is False
        assert "nonce" in result.error

    @pytest.mark.asyncio
    async def test_ca_problem_detail_surfaces(self, store, tmp_path):
        ca = MockCA(
            make_certificate_pem(),
            order_problem={"type": "urn:ietf:params:acme:error:rejectedIdentifier", "detail": "Policy forbids"},
        )
        client = _client(store, ca)

        result = await client.request_certificate(
            ["example.com"], strategy=HTTP01Challenge(webroot=str(tmp_path))
        )

        assert result.success is False
        assert "Policy forbids" in result.error

    @pytest.mark.asyncio
    async def test_transport_failure_is_reported(self, store):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        client = ACMEClient(
            environment=AcmeEnvironment.STAGING,
            directory_url=DIRECTORY_URL,
            account_store=store,
            transport=httpx.MockTransport(refuse),
        )

        result = await client.request_certificate(["example.com"], strategy=HTTP01Challenge(webroot="/tmp"))

        assert result.success is False
        assert "directory" in result.error


class TestIssuanceThroughManager:
    """Provision a stored domain against the mock CA."""

    @pytest.mark.asyncio
    async def test_provision_reaches_active(
        self, domain_store, account_store, mock_proxy, mock_notifications, unconfigured_dns, tmp_path, expiry
    ):
        ca = MockCA(make_certificate_pem("example.com", expiry))
        manager = CertManager(
            domain_store=domain_store,
            acme_client=_client(account_store, ca),
            notifications=mock_notifications,
            proxy=mock_proxy,
            dns_provider=unconfigured_dns,
            cert_dir=str(tmp_path / "live"),
        )
        record = await domain_store.add(Domain(domain="example.com", site_slug="shop", verified=True, user_id="user-1"))

        result = await manager.provision(record.id)

        assert result.success is True, result.error
        stored = await domain_store.get(record.id)
        assert stored.ssl_status == SSLStatus.ACTIVE
        assert stored.ssl_expires_at == expiry
        assert Path(stored.ssl_cert_path).read_text() == ca.cert_pem
        assert "PRIVATE KEY" in Path(stored.ssl_key_path).read_text()

        account = await account_store.get(AcmeEnvironment.STAGING)
        assert account.account_url == ACCOUNT_URL
        mock_proxy.regenerate_and_reload.assert_awaited_once()


class TestHelpers:
    """Test CSR generation, expiry parsing and client registry."""

    def test_generate_csr_lists_every_domain(self):
        from cryptography import x509
        from cryptography.x509.oid import ExtensionOID, NameOID

        csr_b64, key_pem = generate_csr(["example.com", "www.example.com"])
        csr = x509.load_der_x509_csr(b64url_decode(csr_b64))

        assert csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "example.com"
        san = csr.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
        assert san.get_values_for_type(x509.DNSName) == ["example.com", "www.example.com"]
        assert csr.public_key().key_size == 2048
        assert "BEGIN PRIVATE KEY" in key_pem

    def test_generate_csr_rejects_invalid_domain(self):
        with pytest.raises(DomainValidationError):
            generate_csr(["example.com", "bad name"])

    def test_parse_certificate_expiry(self, expiry):
        pem = make_certificate_pem("example.com", expiry)
        assert parse_certificate_expiry(pem) == expiry
        assert parse_certificate_expiry(pem.encode()) == expiry

    def test_parse_certificate_expiry_uses_leaf_of_chain(self, expiry):
        leaf = make_certificate_pem("example.com", expiry)
        issuer = make_certificate_pem("issuer.example", expiry + timedelta(days=900))
        assert parse_certificate_expiry(leaf + issuer) == expiry

    def test_parse_certificate_expiry_garbage(self):
        assert parse_certificate_expiry("not a certificate") is None

    def test_get_acme_client_one_per_environment(self):
        staging = get_acme_client(AcmeEnvironment.STAGING)
        assert get_acme_client("staging") is staging
        assert get_acme_client(AcmeEnvironment.PRODUCTION) is not staging

    def test_get_status(self, store):
        status = _client(store).get_status()
        assert status.environment == AcmeEnvironment.STAGING
        assert status.directory_url == DIRECTORY_URL
        assert status.email == "ops@example.com"
