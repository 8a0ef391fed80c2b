"""
ACME protocol client for certificate issuance.

Implements the RFC 8555 flow directly over httpx: directory discovery,
nonce threading, account registration, orders, authorizations, challenge
responses, CSR finalization and certificate download. Requests are signed
with ES256 using the account key (see core.jws).
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from config import settings
from core.acme_errors import (
    ACMEAuthorizationError,
    ACMEChallengeError,
    ACMEError,
    ACMEOrderError,
    ACMEProtocolError,
    ACMETimeoutError,
    DomainValidationError,
)
from core.challenges import ChallengeStrategy, build_challenge, key_authorization
from core.domain_store import AccountStore
from core.domain_validator import validate_domains
from core.jws import b64url, build_jws, jwk_thumbprint, public_jwk
from models.certificate import (
    ACMEAccount,
    AcmeAuthorization,
    AcmeDirectory,
    AcmeEnvironment,
    AcmeOrder,
    AcmeStatus,
    AuthorizationStatus,
    CertificateResult,
    ChallengeType,
    OrderStatus,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ACMEClient",
    "ACMEError",
    "ACMEProtocolError",
    "ACMEChallengeError",
    "ACMEAuthorizationError",
    "ACMEOrderError",
    "ACMETimeoutError",
    "DomainValidationError",
    "generate_csr",
    "get_acme_client",
    "parse_certificate_expiry",
]

JOSE_CONTENT_TYPE = "application/jose+json"
USER_AGENT = "domain-certs/1.0"


def generate_csr(domains: list[str]) -> tuple[str, str]:
    """
    Create a CSR and its RSA-2048 private key.

    The first domain is the common name; every domain is listed as a SAN.

    Returns:
        Tuple of (base64url DER CSR, PEM private key)
    """
    validation = validate_domains(domains)
    if not validation.valid:
        raise DomainValidationError(validation.invalid or list(domains))

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    builder = x509.CertificateSigningRequestBuilder()
    builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
    builder = builder.add_extension(
        x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains]), critical=False
    )
    csr = builder.sign(private_key, hashes.SHA256())

    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")

    return b64url(csr.public_bytes(serialization.Encoding.DER)), private_key_pem


def parse_certificate_expiry(cert_pem: str | bytes) -> datetime | None:
    """
    Return the not-after time (naive UTC) of the first certificate in a PEM chain.

    Returns None if the PEM cannot be parsed.
    """
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode("utf-8")
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        logger.warning(f"Could not parse certificate expiry: {e}")
        return None
    return cert.not_valid_after_utc.replace(tzinfo=None)


def _problem_detail(response: httpx.Response) -> dict[str, Any]:
    try:
        problem = response.json()
    except ValueError:
        return {}
    return problem if isinstance(problem, dict) else {}


class ACMEClient:
    """
    ACME client bound to one CA environment.

    The account key and URL are cached on the instance once loaded or
    registered. Signed requests are serialized so each nonce is consumed
    exactly once.
    """

    def __init__(
        self,
        environment: AcmeEnvironment | str | None = None,
        email: str | None = None,
        directory_url: str | None = None,
        account_store: AccountStore | None = None,
        poll_attempts: int | None = None,
        poll_interval: float | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.environment = AcmeEnvironment(environment or settings.acme_env)
        self.email = email or settings.acme_email
        if directory_url:
            self.directory_url = directory_url
        elif self.environment == AcmeEnvironment.STAGING:
            self.directory_url = settings.acme_staging_url
        else:
            self.directory_url = settings.acme_directory_url

        self._account_store = account_store
        self.poll_attempts = poll_attempts if poll_attempts is not None else settings.acme_poll_attempts
        self.poll_interval = poll_interval if poll_interval is not None else settings.acme_poll_interval
        self.timeout = timeout if timeout is not None else settings.acme_request_timeout
        self.transport = transport

        self._account_key: ec.EllipticCurvePrivateKey | None = None
        self._account_url: str | None = None
        self._nonce: str | None = None
        self._lock = asyncio.Lock()

    @property
    def account_store(self) -> AccountStore:
        if self._account_store is None:
            self._account_store = AccountStore()
        return self._account_store

    def get_status(self) -> AcmeStatus:
        return AcmeStatus(environment=self.environment, email=self.email, directory_url=self.directory_url)

    # Transport

    async def get_directory(self, http: httpx.AsyncClient) -> AcmeDirectory:
        """Fetch the CA endpoint map."""
        try:
            response = await http.get(self.directory_url)
        except httpx.RequestError as e:
            raise ACMEProtocolError(
                f"Failed to fetch ACME directory: {e}", suggestion="Check network access to the certificate authority"
            )
        if response.is_error:
            raise ACMEProtocolError(
                f"Failed to fetch ACME directory: HTTP {response.status_code}",
                status_code=response.status_code,
                problem=_problem_detail(response),
            )
        return AcmeDirectory.model_validate(response.json())

    async def _fetch_nonce(self, http: httpx.AsyncClient, directory: AcmeDirectory) -> str:
        try:
            response = await http.head(directory.new_nonce)
        except httpx.RequestError as e:
            raise ACMEProtocolError(f"Failed to get nonce from ACME server: {e}")
        nonce = response.headers.get("Replay-Nonce")
        if not nonce:
            raise ACMEProtocolError("Failed to get nonce from ACME server", status_code=response.status_code)
        return nonce

    async def _post(
        self,
        http: httpx.AsyncClient,
        directory: AcmeDirectory,
        url: str,
        payload: Any | None,
        use_kid: bool = True,
        accept: str | None = None,
    ) -> httpx.Response:
        """
        Send a signed request.

        Args:
            payload: JSON payload, or None for POST-as-GET
            use_kid: Identify by account URL; False embeds the JWK (account creation)
        """
        async with self._lock:
            nonce = self._nonce or await self._fetch_nonce(http, directory)
            self._nonce = None

            body = build_jws(
                self._account_key,
                url,
                nonce,
                payload,
                kid=self._account_url if use_kid else None,
            )
            headers = {"Content-Type": JOSE_CONTENT_TYPE}
            if accept:
                headers["Accept"] = accept

            try:
                response = await http.post(url, json=body, headers=headers)
            except httpx.RequestError as e:
                raise ACMEProtocolError(f"ACME request to {url} failed: {e}")

            self._nonce = response.headers.get("Replay-Nonce")

        if response.is_error:
            problem = _problem_detail(response)
            detail = problem.get("detail") or f"HTTP {response.status_code}"
            raise ACMEProtocolError(f"ACME error: {detail}", status_code=response.status_code, problem=problem)

        return response

    # Account

    async def _load_account_key(self) -> ec.EllipticCurvePrivateKey:
        """Return the cached key, the persisted key, or a freshly generated one."""
        if self._account_key is not None:
            return self._account_key

        account = await self.account_store.get(self.environment)
        if account:
            key = serialization.load_pem_private_key(account.private_key_pem.encode("utf-8"), password=None)
            if not isinstance(key, ec.EllipticCurvePrivateKey):
                raise ACMEError(
                    f"Stored {self.environment.value} account key is not an EC key",
                    suggestion="Delete the stored ACME account so a new one is registered",
                )
            logger.info(f"Loaded {self.environment.value} ACME account from database")
            self._account_key = key
            self._account_url = account.account_url
            return key

        # Persisted only once the CA confirms the account
        logger.info(f"Generating new ACME account key for {self.environment.value}")
        self._account_key = ec.generate_private_key(ec.SECP256R1())
        return self._account_key

    async def ensure_account(self, http: httpx.AsyncClient, directory: AcmeDirectory) -> str:
        """Register the account if needed and return its URL."""
        key = await self._load_account_key()
        if self._account_url:
            return self._account_url

        payload = {"termsOfServiceAgreed": True, "contact": [f"mailto:{self.email}"]}
        response = await self._post(http, directory, directory.new_account, payload, use_kid=False)

        account_url = response.headers.get("Location")
        if not account_url:
            raise ACMEProtocolError("Failed to get account URL", status_code=response.status_code)

        private_key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")
        await self.account_store.save(
            ACMEAccount(
                environment=self.environment,
                email=self.email,
                account_url=account_url,
                private_key_pem=private_key_pem,
            )
        )

        self._account_url = account_url
        logger.info(f"Registered {self.environment.value} ACME account {account_url}")
        return account_url

    # Orders and authorizations

    async def create_order(self, http: httpx.AsyncClient, directory: AcmeDirectory, domains: list[str]) -> AcmeOrder:
        payload = {"identifiers": [{"type": "dns", "value": domain} for domain in domains]}
        response = await self._post(http, directory, directory.new_order, payload)

        order_url = response.headers.get("Location")
        if not order_url:
            raise ACMEOrderError("Failed to get order URL")

        order = AcmeOrder.model_validate(response.json())
        order.url = order_url
        logger.info(f"Created ACME order for domains: {domains}")
        return order

    async def get_authorization(
        self, http: httpx.AsyncClient, directory: AcmeDirectory, url: str
    ) -> AcmeAuthorization:
        response = await self._post(http, directory, url, None)
        return AcmeAuthorization.model_validate(response.json())

    async def _poll_authorization(self, http: httpx.AsyncClient, directory: AcmeDirectory, url: str) -> None:
        for _ in range(self.poll_attempts):
            authz = await self.get_authorization(http, directory, url)

            if authz.status == AuthorizationStatus.VALID:
                return

            if authz.status == AuthorizationStatus.INVALID:
                detail = next(
                    (c.error.get("detail") for c in authz.challenges if c.error and c.error.get("detail")),
                    None,
                )
                raise ACMEAuthorizationError(
                    f"Authorization failed for {authz.identifier.value}: {detail or 'challenge invalid'}",
                    suggestion="Check that the domain points to this server and the challenge is reachable",
                )

            if authz.status != AuthorizationStatus.PENDING:
                raise ACMEAuthorizationError(f"Authorization for {authz.identifier.value} is {authz.status.value}")

            await asyncio.sleep(self.poll_interval)

        raise ACMETimeoutError(
            "Authorization timed out",
            suggestion="Increase ACME_POLL_ATTEMPTS or check domain accessibility",
        )

    async def complete_authorization(
        self,
        http: httpx.AsyncClient,
        directory: AcmeDirectory,
        url: str,
        challenge_type: ChallengeType,
        strategy: ChallengeStrategy,
        thumbprint: str,
    ) -> None:
        """Satisfy one authorization with the given challenge strategy."""
        authz = await self.get_authorization(http, directory, url)
        domain = authz.identifier.value

        if authz.status == AuthorizationStatus.VALID:
            logger.info(f"Authorization for {domain} already valid")
            return

        challenge = authz.find_challenge(challenge_type)
        if not challenge:
            raise ACMEChallengeError(
                f"No {challenge_type.value} challenge available for {domain}",
                suggestion="Try the other challenge type",
            )

        await strategy.prepare(domain, challenge.token, key_authorization(challenge.token, thumbprint))
        try:
            await self._post(http, directory, challenge.url, {})
            await self._poll_authorization(http, directory, url)
        finally:
            await strategy.cleanup(domain, challenge.token)

        logger.info(f"Authorization for {domain} is valid")

    async def finalize_order(
        self, http: httpx.AsyncClient, directory: AcmeDirectory, order: AcmeOrder, csr: str
    ) -> AcmeOrder:
        """Submit the CSR and poll the order until the certificate is ready."""
        await self._post(http, directory, order.finalize, {"csr": csr})

        for _ in range(self.poll_attempts):
            response = await self._post(http, directory, order.url, None)
            current = AcmeOrder.model_validate(response.json())
            current.url = order.url

            if current.status == OrderStatus.VALID and current.certificate:
                return current

            if current.status == OrderStatus.INVALID:
                raise ACMEOrderError(
                    "Order failed: certificate issuance invalid",
                    suggestion="Check the order's authorizations at the certificate authority",
                )

            await asyncio.sleep(self.poll_interval)

        raise ACMETimeoutError("Order timed out", suggestion="The CA may be slow; the next renewal run will retry")

    async def download_certificate(self, http: httpx.AsyncClient, directory: AcmeDirectory, url: str) -> str:
        response = await self._post(http, directory, url, None, accept="application/pem-certificate-chain")
        return response.text

    # Entry point

    async def request_certificate(
        self,
        domains: list[str],
        challenge_type: ChallengeType = ChallengeType.HTTP_01,
        strategy: ChallengeStrategy | None = None,
    ) -> CertificateResult:
        """
        Obtain a certificate covering every domain.

        Never raises; failures come back as CertificateResult(success=False).
        No partial certificate is returned on failure.
        """
        try:
            validation = validate_domains(domains)
            if not validation.valid:
                raise DomainValidationError(validation.invalid or list(domains))

            challenge_type = ChallengeType(challenge_type)
            strategy = strategy or build_challenge(challenge_type)

            logger.info(f"Requesting certificate for: {', '.join(domains)}")
            logger.info(f"Using {self.environment.value} environment with {challenge_type.value} challenge")

            # Nonces are not carried over between attempts
            self._nonce = None

            async with httpx.AsyncClient(
                timeout=self.timeout, headers={"User-Agent": USER_AGENT}, transport=self.transport
            ) as http:
                directory = await self.get_directory(http)
                await self.ensure_account(http, directory)
                thumbprint = jwk_thumbprint(public_jwk(self._account_key))

                order = await self.create_order(http, directory, domains)
                for authz_url in order.authorizations:
                    await self.complete_authorization(http, directory, authz_url, challenge_type, strategy, thumbprint)

                csr, private_key_pem = generate_csr(domains)
                order = await self.finalize_order(http, directory, order, csr)
                certificate = await self.download_certificate(http, directory, order.certificate)

            expires_at = parse_certificate_expiry(certificate)
            logger.info(f"Certificate issued successfully, expires: {expires_at}")

            return CertificateResult(
                success=True,
                certificate=certificate,
                private_key=private_key_pem,
                expires_at=expires_at,
            )

        except ACMEError as e:
            logger.error(f"Certificate request failed: {e.message}")
            return CertificateResult(success=False, error=e.message)
        except Exception as e:
            logger.exception(f"Certificate request failed: {e}")
            return CertificateResult(success=False, error=str(e) or type(e).__name__)


# Clients per CA environment
_acme_clients: dict[AcmeEnvironment, ACMEClient] = {}


def get_acme_client(environment: AcmeEnvironment | str | None = None) -> ACMEClient:
    """Get the ACME client for an environment (defaults to ACME_ENV)."""
    env = AcmeEnvironment(environment or settings.acme_env)
    if env not in _acme_clients:
        _acme_clients[env] = ACMEClient(environment=env)
    return _acme_clients[env]
