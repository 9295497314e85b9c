import base64
import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from core.settings import reset_settings_cache
from models.entitlement import Entitlement, Upload, Usage
from models.purchases import GooglePurchase
from models.user import User
from services.auth.nostr_event import encode_npub
from services.subscriptions import google_play
from services.subscriptions.entitlement_store import ensure_user, upsert_entitlement
from services.subscriptions.errors import ProviderError
from services.subscriptions.google_play import GooglePlayError
from services.subscriptions.purchase_mappings import upsert_google_mapping


@pytest.fixture()
def storage_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("S3_ENDPOINT", "http://localhost:9000")
    monkeypatch.setenv("S3_ACCESS_KEY", "minio")
    monkeypatch.setenv("S3_SECRET_KEY", "minio-secret")
    monkeypatch.setenv("S3_BUCKET", "clipvault-test")
    monkeypatch.setenv("S3_REGION", "us-east-1")
    reset_settings_cache()


@pytest.fixture()
def trial_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FREE_TRIAL_MODE", "true")
    monkeypatch.setenv("FREE_TRIAL_DAYS", "30")
    reset_settings_cache()


def _json(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


def _use_play_client(monkeypatch: pytest.MonkeyPatch, client) -> None:
    monkeypatch.setattr(google_play.GooglePlayClient, "from_settings", classmethod(lambda cls, settings=None: client))


def test_health(api_client) -> None:
    response = api_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_challenge_issuance(api_client, challenge_store) -> None:
    response = api_client.post("/auth/challenge")

    assert response.status_code == 200
    payload = response.json()
    assert len(payload["challenge"]) == 48
    assert payload["expires_at"].endswith("Z")
    assert challenge_store.is_live(payload["challenge"])


def test_entitlement_requires_authentication(api_client) -> None:
    response = api_client.get("/entitlement")
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "auth.required"


def test_entitlement_for_new_identity(api_client, signed_headers, signer, session_factory) -> None:
    response = api_client.get("/entitlement", headers=signed_headers("GET", "/entitlement"))

    assert response.status_code == 200
    assert response.json() == {
        "plan": None,
        "status": "none",
        "expires_at": None,
        "quota_bytes": "0",
        "used_bytes": "0",
    }
    with session_factory() as session:
        assert session.get(User, encode_npub(signer.pubkey)) is not None


def test_proof_cannot_be_replayed_over_http(api_client, signed_headers) -> None:
    headers = signed_headers("GET", "/entitlement")
    assert api_client.get("/entitlement", headers=headers).status_code == 200
    assert api_client.get("/entitlement", headers=headers).status_code == 401


def test_proof_for_another_route_is_rejected(api_client, signed_headers, storage_env) -> None:
    body = _json({"key": "videos/x/1/a.mp4"})
    headers = signed_headers("GET", "/entitlement")
    headers["Content-Type"] = "application/json"
    response = api_client.post("/presign/download", content=body, headers=headers)
    assert response.status_code == 401


def test_entitlement_with_trial_mode(api_client, signed_headers, trial_mode) -> None:
    response = api_client.get("/entitlement", headers=signed_headers("GET", "/entitlement"))

    payload = response.json()
    assert payload["plan"] == "trial"
    assert payload["status"] == "active"
    assert payload["quota_bytes"] == str(50 * 1024**3)


def test_upload_requires_entitlement(api_client, signed_headers, storage_env) -> None:
    body = _json({"filename": "clip.mp4", "content_type": "video/mp4", "size_bytes": 1024})
    response = api_client.post("/presign/upload", content=body, headers=signed_headers("POST", "/presign/upload", body))

    assert response.status_code == 402
    assert response.json()["detail"]["code"] == "entitlement.required"


def test_upload_with_lapsed_entitlement_is_refused(api_client, signed_headers, signer, session_factory, storage_env):
    npub = encode_npub(signer.pubkey)
    with session_factory() as session:
        ensure_user(session, npub)
        upsert_entitlement(
            session,
            npub=npub,
            platform="ios",
            product_id="com.clipvault.pro",
            status="canceled",
            expires_at=datetime.now(timezone.utc) + timedelta(days=10),
            quota_bytes=1,
        )
        session.commit()

    body = _json({"filename": "clip.mp4", "content_type": "video/mp4", "size_bytes": 1024})
    response = api_client.post("/presign/upload", content=body, headers=signed_headers("POST", "/presign/upload", body))
    assert response.status_code == 402


def test_upload_records_object_and_usage(api_client, signed_headers, signer, session_factory, storage_env, trial_mode):
    npub = encode_npub(signer.pubkey)
    body = _json({"filename": "../clip.mp4", "content_type": "video/mp4", "size_bytes": 2048})

    response = api_client.post("/presign/upload", content=body, headers=signed_headers("POST", "/presign/upload", body))

    assert response.status_code == 200
    payload = response.json()
    assert payload["key"].startswith(f"videos/{npub}/")
    assert payload["key"].endswith("/clip.mp4")
    assert payload["url"].startswith("http://localhost:9000/clipvault-test/videos/")
    assert "X-Amz-Signature=" in payload["url"]
    assert payload["headers"] == {"Content-Type": "video/mp4"}
    assert payload["expires_in"] == 600

    with session_factory() as session:
        upload = session.execute(select(Upload)).scalar_one()
        assert upload.object_key == payload["key"]
        assert upload.status == "pending"
        assert session.get(Usage, npub).stored_bytes == 2048

    entitlement = api_client.get("/entitlement", headers=signed_headers("GET", "/entitlement")).json()
    assert entitlement["used_bytes"] == "2048"


def test_upload_without_storage_config_is_unavailable(api_client, signed_headers, trial_mode) -> None:
    body = _json({"filename": "clip.mp4", "content_type": "video/mp4", "size_bytes": 1})
    response = api_client.post("/presign/upload", content=body, headers=signed_headers("POST", "/presign/upload", body))

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "config.missing"


def test_download_only_for_own_objects(api_client, signed_headers, signer, storage_env) -> None:
    npub = encode_npub(signer.pubkey)

    foreign = _json({"key": "videos/npub1someoneelse/1/clip.mp4"})
    response = api_client.post(
        "/presign/download", content=foreign, headers=signed_headers("POST", "/presign/download", foreign)
    )
    assert response.status_code == 404

    own = _json({"key": f"videos/{npub}/1/clip.mp4"})
    response = api_client.post("/presign/download", content=own, headers=signed_headers("POST", "/presign/download", own))
    assert response.status_code == 200
    assert response.json()["url"].startswith(f"http://localhost:9000/clipvault-test/videos/{npub}/1/clip.mp4")


def test_claim_google_purchase(api_client, signed_headers, signer, session_factory) -> None:
    with session_factory() as session:
        upsert_google_mapping(
            session,
            purchase_token="token-1",
            package_name="com.clipvault.app",
            subscription_id="clipvault_pro",
            status="active",
            expires_at=datetime.now(timezone.utc) + timedelta(days=30),
        )
        session.commit()

    body = _json({"platform": "android", "purchase_token": "token-1"})
    response = api_client.post("/purchases/claim", content=body, headers=signed_headers("POST", "/purchases/claim", body))

    assert response.status_code == 200
    payload = response.json()
    assert payload["claimed"] == 1
    assert payload["entitlements"][0]["plan"] == "clipvault_pro"
    with session_factory() as session:
        assert session.get(GooglePurchase, "token-1").npub == encode_npub(signer.pubkey)


def test_claim_unknown_purchase_is_404(api_client, signed_headers) -> None:
    body = _json({"platform": "android", "purchase_token": "nope"})
    response = api_client.post("/purchases/claim", content=body, headers=signed_headers("POST", "/purchases/claim", body))
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "purchases.not_found"


def test_claim_requires_platform_key(api_client, signed_headers) -> None:
    body = _json({"platform": "ios"})
    response = api_client.post("/purchases/claim", content=body, headers=signed_headers("POST", "/purchases/claim", body))
    assert response.status_code == 422


def test_appstore_webhook_accepts_verified_notification(api_client, apple_pki, session_factory, monkeypatch) -> None:
    monkeypatch.setenv("APPLE_ROOT_CERTIFICATES", base64.b64encode(apple_pki.root_der).decode("ascii"))
    reset_settings_cache()

    response = api_client.post("/webhooks/appstore", json={"signedPayload": apple_pki.notification("SUBSCRIBED")})

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    with session_factory() as session:
        assert session.execute(select(Entitlement)).first() is None


def test_appstore_webhook_without_roots_is_unavailable(api_client, apple_pki) -> None:
    response = api_client.post("/webhooks/appstore", json={"signedPayload": apple_pki.notification("SUBSCRIBED")})
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "config.missing"


def test_appstore_webhook_with_unreadable_root_file_is_unavailable(api_client, apple_pki, monkeypatch, tmp_path):
    bogus = tmp_path / "AppleRootCA-G3.cer"
    bogus.write_bytes(b"definitely not DER")
    monkeypatch.setenv("APPLE_ROOT_CERTIFICATES", str(bogus))
    reset_settings_cache()

    response = api_client.post("/webhooks/appstore", json={"signedPayload": apple_pki.notification("SUBSCRIBED")})
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "config.missing"


def test_appstore_webhook_rejects_sandbox_notification_in_production(api_client, apple_pki, monkeypatch) -> None:
    monkeypatch.setenv("APPLE_ROOT_CERTIFICATES", base64.b64encode(apple_pki.root_der).decode("ascii"))
    reset_settings_cache()

    signed = apple_pki.notification("SUBSCRIBED", environment="Sandbox")
    response = api_client.post("/webhooks/appstore", json={"signedPayload": signed})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "webhook.payload_invalid"


@pytest.mark.parametrize("body", [b"not json", b'{"signed": "x"}'])
def test_appstore_webhook_rejects_bad_body(api_client, body: bytes) -> None:
    response = api_client.post("/webhooks/appstore", content=body, headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "webhook.payload_invalid"


def test_play_webhook_missing_credentials(api_client) -> None:
    body = {"packageName": "com.clipvault.app", "subscriptionId": "clipvault_pro", "purchaseToken": "t"}
    response = api_client.post("/webhooks/play", json=body)
    assert response.status_code == 503


def test_play_webhook_maps_provider_failures(api_client, monkeypatch) -> None:
    class FailingClient:
        def __init__(self, status_code):
            self.status_code = status_code

        async def get_subscription(self, *_args):
            raise GooglePlayError(self.status_code, "provider said no")

    body = {"packageName": "com.clipvault.app", "subscriptionId": "clipvault_pro", "purchaseToken": "t"}

    _use_play_client(monkeypatch, FailingClient(500))
    assert api_client.post("/webhooks/play", json=body).status_code == 503

    _use_play_client(monkeypatch, FailingClient(404))
    assert api_client.post("/webhooks/play", json=body).status_code == 502
    assert issubclass(GooglePlayError, ProviderError)


def test_play_webhook_records_unbound_purchase(api_client, monkeypatch, session_factory) -> None:
    expiry = datetime.now(timezone.utc) + timedelta(days=30)

    class StubClient:
        async def get_subscription(self, *_args):
            return {"paymentState": 1, "expiryTimeMillis": str(int(expiry.timestamp() * 1000))}

    _use_play_client(monkeypatch, StubClient())
    body = {"packageName": "com.clipvault.app", "subscriptionId": "clipvault_pro", "purchaseToken": "tok-9"}

    response = api_client.post("/webhooks/play", json=body)

    assert response.status_code == 200
    with session_factory() as session:
        assert session.get(GooglePurchase, "tok-9").npub is None
        assert session.execute(select(Entitlement)).first() is None


def test_play_webhook_test_notification_is_acknowledged(api_client) -> None:
    data = base64.b64encode(json.dumps({"testNotification": {"version": "1.0"}}).encode()).decode()
    response = api_client.post("/webhooks/play", json={"message": {"data": data}})
    assert response.status_code == 200
