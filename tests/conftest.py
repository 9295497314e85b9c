import base64
import json
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))

import jwt
from coincurve import PrivateKey, PublicKeyXOnly
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers metadata
from core.settings import reset_settings_cache
from database import Base, get_db
from services import storage_presign
from services.auth.challenge_store import InMemoryChallengeStore
from services.auth.nostr_event import HTTP_AUTH_KIND, NostrEvent
from services.auth.request_auth import build_proof_content
from services.subscriptions.apple import AppleSignedDataVerifier
from web.deps import get_store
from web.routers import auth, entitlement, health, purchases, storage, webhooks

_MANAGED_ENV = (
    "FREE_TRIAL_MODE",
    "FREE_TRIAL_DAYS",
    "APPLE_ROOT_CERTIFICATES",
    "APPLE_BUNDLE_ID",
    "APPLE_ENVIRONMENT",
    "GOOGLE_CLIENT_EMAIL",
    "GOOGLE_PRIVATE_KEY_BASE64",
    "S3_ENDPOINT",
    "S3_ACCESS_KEY",
    "S3_SECRET_KEY",
    "S3_BUCKET",
    "S3_REGION",
    "CHALLENGE_STORE_REDIS_URL",
    "NIP98_CHALLENGE_TTL_SECONDS",
)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for key in _MANAGED_ENV:
        monkeypatch.delenv(key, raising=False)
    reset_settings_cache()
    storage_presign.reset_presign_client()
    yield
    reset_settings_cache()
    storage_presign.reset_presign_client()


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def challenge_store() -> InMemoryChallengeStore:
    return InMemoryChallengeStore(ttl_seconds=300)


@pytest.fixture()
def api_client(session_factory: sessionmaker, challenge_store: InMemoryChallengeStore) -> Generator[TestClient, None, None]:
    app = FastAPI()
    for module in (health, auth, entitlement, storage, purchases, webhooks):
        app.include_router(module.router)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_store] = lambda: challenge_store
    client = TestClient(app)
    try:
        yield client
    finally:
        client.close()


@dataclass
class NostrSigner:
    """Test client that signs NIP-98 style request proofs."""

    secret: PrivateKey = field(default_factory=PrivateKey)

    @property
    def pubkey(self) -> str:
        return PublicKeyXOnly.from_secret(self.secret.secret).format().hex()

    def sign_event(self, content: str, *, kind: int = HTTP_AUTH_KIND, created_at: Optional[int] = None) -> Dict[str, Any]:
        unsigned = NostrEvent(
            id="",
            pubkey=self.pubkey,
            created_at=created_at if created_at is not None else int(time.time()),
            kind=kind,
            tags=[],
            content=content,
            sig="",
        )
        event_id = unsigned.compute_id()
        signature = self.secret.sign_schnorr(bytes.fromhex(event_id), os.urandom(32))
        return {
            "id": event_id,
            "pubkey": unsigned.pubkey,
            "created_at": unsigned.created_at,
            "kind": unsigned.kind,
            "tags": unsigned.tags,
            "content": content,
            "sig": signature.hex(),
        }

    @staticmethod
    def header_for(event: Dict[str, Any]) -> str:
        encoded = base64.b64encode(json.dumps(event).encode("utf-8")).decode("ascii")
        return f"Nostr {encoded}"

    def authorization(self, challenge: str, method: str, url: str, body: Optional[bytes] = None) -> str:
        return self.header_for(self.sign_event(build_proof_content(challenge, method, url, body)))


@pytest.fixture()
def signer() -> NostrSigner:
    return NostrSigner()


@pytest.fixture()
def signed_headers(api_client: TestClient, signer: NostrSigner) -> Callable[..., Dict[str, str]]:
    """Fetch a fresh challenge and return headers proving ``method url [body]``."""

    def _build(method: str, url: str, body: Optional[bytes] = None) -> Dict[str, str]:
        challenge = api_client.post("/auth/challenge").json()["challenge"]
        headers = {"Authorization": signer.authorization(challenge, method, url, body)}
        if body is not None:
            headers["Content-Type"] = "application/json"
        return headers

    return _build


LEAF_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
INTERMEDIATE_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(
    subject: str,
    key,
    issuer: str,
    issuer_key,
    *,
    ca: bool,
    marker: Optional[x509.ObjectIdentifier] = None,
    expired: bool = False,
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    not_after = now - timedelta(days=1) if expired else now + timedelta(days=365)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=30))
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if marker is not None:
        builder = builder.add_extension(x509.UnrecognizedExtension(marker, b"\x05\x00"), critical=False)
    return builder.sign(issuer_key, hashes.SHA256())


@dataclass
class ApplePki:
    """Root -> intermediate -> leaf EC chain that signs App Store style JWS tokens.

    The flags build chains that a verifier must refuse.
    """

    root_name: str = "Test Apple Root CA"
    intermediate_ca: bool = True
    leaf_expired: bool = False
    leaf_marker: bool = True
    chain: List[x509.Certificate] = field(default_factory=list)
    leaf_key: Any = None

    def __post_init__(self) -> None:
        root_key = ec.generate_private_key(ec.SECP256R1())
        intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf_key = ec.generate_private_key(ec.SECP256R1())
        root = _certificate(self.root_name, root_key, self.root_name, root_key, ca=True)
        intermediate = _certificate(
            "Test WWDR",
            intermediate_key,
            self.root_name,
            root_key,
            ca=self.intermediate_ca,
            marker=INTERMEDIATE_MARKER_OID,
        )
        leaf = _certificate(
            "Test Store Signing",
            self.leaf_key,
            "Test WWDR",
            intermediate_key,
            ca=False,
            marker=LEAF_MARKER_OID if self.leaf_marker else None,
            expired=self.leaf_expired,
        )
        self.chain = [leaf, intermediate, root]

    @property
    def root_der(self) -> bytes:
        return self.chain[-1].public_bytes(Encoding.DER)

    def sign(self, payload: Dict[str, Any]) -> str:
        x5c = [base64.b64encode(cert.public_bytes(Encoding.DER)).decode("ascii") for cert in self.chain]
        return jwt.encode(payload, self.leaf_key, algorithm="ES256", headers={"x5c": x5c})

    def verifier(
        self, *, bundle_id: Optional[str] = None, environment: Optional[str] = None
    ) -> AppleSignedDataVerifier:
        return AppleSignedDataVerifier([self.root_der], bundle_id=bundle_id, environment=environment)

    def notification(
        self,
        notification_type: str,
        *,
        original_tx_id: str = "1000000000000001",
        product_id: str = "com.clipvault.pro.monthly",
        expires_at: Optional[datetime] = None,
        app_account_token: Optional[str] = None,
        bundle_id: str = "com.clipvault.app",
        environment: str = "Production",
    ) -> str:
        expiry = expires_at or datetime.now(timezone.utc) + timedelta(days=30)
        transaction = {
            "originalTransactionId": original_tx_id,
            "transactionId": f"{original_tx_id}-tx",
            "productId": product_id,
            "expiresDate": int(expiry.timestamp() * 1000),
            "bundleId": bundle_id,
        }
        if app_account_token:
            transaction["appAccountToken"] = app_account_token
        return self.sign(
            {
                "notificationType": notification_type,
                "notificationUUID": f"uuid-{notification_type.lower()}",
                "version": "2.0",
                "data": {
                    "bundleId": bundle_id,
                    "environment": environment,
                    "signedTransactionInfo": self.sign(transaction),
                },
            }
        )


@pytest.fixture(scope="session")
def apple_pki() -> ApplePki:
    return ApplePki()
