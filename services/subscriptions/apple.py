"""App Store Server Notification V2 verification and reconciliation."""

from __future__ import annotations

import base64
import binascii
import os
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.serialization import Encoding
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from core.plan_constants import EntitlementStatus, Platform
from core.settings import AppleSettings, get_settings
from models._types import utcnow
from services.subscriptions import purchase_mappings
from services.subscriptions.entitlement_store import ensure_user, upsert_entitlement
from services.subscriptions.errors import ConfigurationError, MalformedPayload
from services.subscriptions.notifications import AppleNotification, AppleTransaction, validate_payload
from services.subscriptions.outcomes import ReconcileOutcome, ReconcileResult
from services.subscriptions.quota import plan_to_quota

logger = get_logger(__name__)

_ACTIVE = EntitlementStatus.ACTIVE.value
_CANCELED = EntitlementStatus.CANCELED.value

APPLE_STATUS_BY_TYPE: Dict[str, str] = {
    "SUBSCRIBED": _ACTIVE,
    "DID_RENEW": _ACTIVE,
    "OFFER_REDEEMED": _ACTIVE,
    "EXPIRED": EntitlementStatus.EXPIRED.value,
    "GRACE_PERIOD_EXPIRED": EntitlementStatus.PAUSED.value,
    "DID_FAIL_TO_RENEW": _CANCELED,
    "REFUND": _CANCELED,
    "REFUND_DECLINED": _CANCELED,
    "REFUND_REVERSED": _CANCELED,
    "PRICE_INCREASE": _CANCELED,
    "RENEWAL_EXTENSION": _CANCELED,
    "RENEWAL_EXTENDED": _CANCELED,
    "DID_CHANGE_RENEWAL_STATUS": _CANCELED,
    "DID_CHANGE_RENEWAL_PREF": _CANCELED,
    "REVOKE": _CANCELED,
}


def map_apple_status(notification_type: str, *, expires_at: datetime, now: Optional[datetime] = None) -> str:
    """Translate a notification type into an entitlement status.

    Unknown types fall back to the transaction expiry instead of granting access unconditionally.
    """
    mapped = APPLE_STATUS_BY_TYPE.get((notification_type or "").upper())
    if mapped is not None:
        return mapped
    current = now or utcnow()
    fallback = _ACTIVE if expires_at > current else EntitlementStatus.EXPIRED.value
    logger.warning(
        "Unrecognised App Store notification type %s; deriving status %s from expiry.",
        notification_type,
        fallback,
    )
    return fallback


def _load_root(entry: str) -> bytes:
    if os.path.isfile(entry):
        with open(entry, "rb") as handle:
            raw = handle.read()
        try:
            if raw.lstrip().startswith(b"-----BEGIN"):
                return x509.load_pem_x509_certificate(raw).public_bytes(Encoding.DER)
            return x509.load_der_x509_certificate(raw).public_bytes(Encoding.DER)
        except ValueError as exc:
            raise ConfigurationError(f"APPLE_ROOT_CERTIFICATES file {entry} is not a certificate.") from exc
    try:
        der = base64.b64decode(entry, validate=True)
        return x509.load_der_x509_certificate(der).public_bytes(Encoding.DER)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError(f"APPLE_ROOT_CERTIFICATES entry is neither a file nor base64 DER: {entry[:32]}") from exc


def _is_ca(certificate: x509.Certificate) -> bool:
    try:
        return certificate.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _has_extension(certificate: x509.Certificate, oid: x509.ObjectIdentifier) -> bool:
    try:
        certificate.extensions.get_extension_for_oid(oid)
    except x509.ExtensionNotFound:
        return False
    return True


class AppleSignedDataVerifier:
    """Verify Apple JWS tokens against their ``x5c`` chain and a set of trusted roots.

    The chain must be exactly leaf, intermediate, root, with CA issuers and
    certificates inside their validity window. The leaf and intermediate must
    carry Apple's marker extensions.
    """

    algorithms = ("ES256",)
    leaf_marker_oid = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
    intermediate_marker_oid = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")

    def __init__(
        self,
        trusted_roots: Iterable[bytes],
        *,
        bundle_id: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> None:
        self._roots: FrozenSet[bytes] = frozenset(trusted_roots)
        if not self._roots:
            raise ConfigurationError("No trusted Apple root certificates are configured.")
        self.bundle_id = bundle_id
        self.environment = environment

    @classmethod
    def from_settings(cls, settings: Optional[AppleSettings] = None) -> "AppleSignedDataVerifier":
        apple = settings or get_settings().apple
        if not apple.root_certificates:
            raise ConfigurationError("APPLE_ROOT_CERTIFICATES must be configured to verify App Store notifications.")
        return cls(
            [_load_root(entry) for entry in apple.root_certificates],
            bundle_id=apple.bundle_id,
            environment=apple.environment,
        )

    def _chain(self, header: Dict[str, Any]) -> List[x509.Certificate]:
        encoded = header.get("x5c")
        if not isinstance(encoded, list) or len(encoded) != 3:
            raise MalformedPayload("JWS header must carry a three certificate x5c chain.")
        try:
            return [x509.load_der_x509_certificate(base64.b64decode(item)) for item in encoded]
        except (binascii.Error, TypeError, ValueError) as exc:
            raise MalformedPayload("JWS x5c chain contains an unreadable certificate.") from exc

    def _check_chain(self, chain: List[x509.Certificate], at: datetime) -> None:
        leaf, intermediate, root = chain
        if root.public_bytes(Encoding.DER) not in self._roots:
            raise MalformedPayload("JWS certificate chain does not end in a trusted Apple root.")
        try:
            for child, issuer in zip(chain, chain[1:]):
                child.verify_directly_issued_by(issuer)
        except (InvalidSignature, TypeError, ValueError) as exc:
            raise MalformedPayload("JWS certificate chain is broken.") from exc
        if not (_is_ca(intermediate) and _is_ca(root)):
            raise MalformedPayload("JWS certificate chain has an issuer that is not a CA.")
        for certificate in chain:
            if not certificate.not_valid_before_utc <= at <= certificate.not_valid_after_utc:
                raise MalformedPayload(f"JWS certificate {certificate.subject.rfc4514_string()} is not valid at {at}.")
        if not _has_extension(leaf, self.leaf_marker_oid):
            raise MalformedPayload("JWS signing certificate is not an App Store signing certificate.")
        if not _has_extension(intermediate, self.intermediate_marker_oid):
            raise MalformedPayload("JWS intermediate certificate is not an Apple WWDR certificate.")

    def decode(self, token: str, *, at: Optional[datetime] = None) -> Dict[str, Any]:
        if not isinstance(token, str) or not token:
            raise MalformedPayload("Signed payload is empty.")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise MalformedPayload("Signed payload is not a JWS.") from exc
        if header.get("alg") not in self.algorithms:
            raise MalformedPayload(f"Unsupported JWS algorithm {header.get('alg')!r}.")

        chain = self._chain(header)
        self._check_chain(chain, at or utcnow())

        try:
            payload = jwt.decode(
                token,
                key=chain[0].public_key(),
                algorithms=list(self.algorithms),
                options={"verify_aud": False, "verify_exp": False},
            )
        except jwt.PyJWTError as exc:
            raise MalformedPayload("JWS signature verification failed.") from exc
        if not isinstance(payload, dict):
            raise MalformedPayload("JWS payload must be a JSON object.")
        return payload


def reconcile_apple_notification(
    session: Session,
    signed_payload: str,
    *,
    verifier: Optional[AppleSignedDataVerifier] = None,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """Apply one App Store notification in a single transaction.

    Verification and validation run before any write; an unresolved identity
    only records the purchase mapping.
    """
    verifier = verifier or AppleSignedDataVerifier.from_settings()
    current = now or utcnow()

    notification = validate_payload(AppleNotification, verifier.decode(signed_payload), label="App Store notification")
    data = notification.data
    if verifier.bundle_id and data is not None and data.bundle_id and data.bundle_id != verifier.bundle_id:
        raise MalformedPayload(f"Notification is for bundle {data.bundle_id}, expected {verifier.bundle_id}.")
    if verifier.environment and data is not None and data.environment != verifier.environment:
        raise MalformedPayload(f"Notification is from {data.environment}, expected {verifier.environment}.")
    if data is None or not data.signed_transaction_info:
        logger.info(
            "App Store notification %s carries no transaction; ignoring.",
            notification.notification_type,
            extra={"webhook": {"type": notification.notification_type, "uuid": notification.notification_uuid}},
        )
        return ReconcileResult(outcome=ReconcileOutcome.IGNORED)

    transaction = validate_payload(
        AppleTransaction, verifier.decode(data.signed_transaction_info), label="App Store transaction"
    )
    expires_at = transaction.expires_at
    status = map_apple_status(notification.notification_type, expires_at=expires_at, now=current)
    log_context = {
        "type": notification.notification_type,
        "uuid": notification.notification_uuid,
        "original_tx_id": transaction.original_transaction_id,
        "status": status,
    }

    try:
        npub = purchase_mappings.find_apple_identity(
            session, transaction.original_transaction_id, transaction.app_account_token
        )
        if npub is None:
            purchase_mappings.upsert_apple_mapping(
                session,
                original_tx_id=transaction.original_transaction_id,
                app_account_token=transaction.app_account_token,
                product_id=transaction.product_id,
                status=status,
                expires_at=expires_at,
                now=current,
            )
            session.commit()
            logger.info("App Store purchase not linked to an identity yet.", extra={"webhook": log_context})
            return ReconcileResult(outcome=ReconcileOutcome.UNRESOLVED, status=status)

        ensure_user(session, npub, now=current)
        entitlement = upsert_entitlement(
            session,
            npub=npub,
            platform=Platform.IOS.value,
            product_id=transaction.product_id,
            status=status,
            expires_at=expires_at,
            quota_bytes=plan_to_quota(transaction.product_id),
            original_tx_id=transaction.original_transaction_id,
            now=current,
        )
        purchase_mappings.upsert_apple_mapping(
            session,
            original_tx_id=transaction.original_transaction_id,
            app_account_token=transaction.app_account_token,
            product_id=transaction.product_id,
            status=status,
            expires_at=expires_at,
            npub=npub,
            now=current,
        )
        entitlement_id = entitlement.id
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to apply App Store notification.", extra={"webhook": log_context})
        raise

    logger.info("Applied App Store notification for %s.", npub, extra={"webhook": log_context})
    return ReconcileResult(
        outcome=ReconcileOutcome.APPLIED,
        status=status,
        npub=npub,
        entitlement_id=entitlement_id,
    )


__all__ = [
    "APPLE_STATUS_BY_TYPE",
    "AppleSignedDataVerifier",
    "ReconcileOutcome",
    "ReconcileResult",
    "map_apple_status",
    "reconcile_apple_notification",
]
