"""Thin wrapper around py_webauthn.

The library does the cryptography; this module only turns our settings and
stored credentials into its arguments and its results into plain values.
Policy (challenge custody, counter monotonicity, one passkey per user) lives
in ``latchkey.auth.passkeys``.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import (
    base64url_to_bytes,
    bytes_to_base64url,
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from latchkey.auth.errors import PasskeyVerificationFailed
from latchkey.config import settings
from latchkey.db import PasskeyCredential

logger = logging.getLogger(__name__)

CEREMONY_TIMEOUT_MS = 60_000


@dataclass(frozen=True)
class CeremonyOptions:
    """Options to hand to ``navigator.credentials`` and the challenge inside them."""

    options: dict[str, Any]
    challenge: str


@dataclass(frozen=True)
class VerifiedCredential:
    credential_id: str
    public_key: str
    sign_count: int
    transports: list[str] = field(default_factory=list)


def _transports(values: list[str] | None) -> list[AuthenticatorTransport] | None:
    if not values:
        return None
    known = {t.value for t in AuthenticatorTransport}
    return [AuthenticatorTransport(v) for v in values if v in known]


class RelyingParty:
    """Our WebAuthn relying party identity and its ceremonies."""

    def __init__(self, rp_id: str, rp_name: str, origin: str) -> None:
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin

    def registration_options(self, user_id: int, email: str, name: str) -> CeremonyOptions:
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=str(user_id).encode("utf-8"),
            user_name=email,
            user_display_name=name,
            timeout=CEREMONY_TIMEOUT_MS,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.REQUIRED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
        )
        return CeremonyOptions(
            options=json.loads(options_to_json(options)),
            challenge=bytes_to_base64url(options.challenge),
        )

    def authentication_options(
        self, credential: PasskeyCredential | None = None
    ) -> CeremonyOptions:
        """Options scoped to one credential, or open to any discoverable one."""
        allow_credentials = None
        if credential is not None:
            allow_credentials = [
                PublicKeyCredentialDescriptor(
                    id=base64url_to_bytes(credential.credential_id),
                    transports=_transports(credential.transports),
                )
            ]

        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=CEREMONY_TIMEOUT_MS,
            allow_credentials=allow_credentials,
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        return CeremonyOptions(
            options=json.loads(options_to_json(options)),
            challenge=bytes_to_base64url(options.challenge),
        )

    def verify_registration(self, response: dict[str, Any], challenge: str) -> VerifiedCredential:
        """Verify an attestation response.

        Raises:
            PasskeyVerificationFailed: If the response is malformed or doesn't verify
        """
        try:
            credential = parse_registration_credential_json(response)
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                require_user_verification=True,
            )
        except WebAuthnException as e:
            logger.info(f"Passkey registration rejected: {e}")
            raise PasskeyVerificationFailed() from e

        transports = credential.response.transports or []
        return VerifiedCredential(
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=bytes_to_base64url(verified.credential_public_key),
            sign_count=verified.sign_count,
            transports=[t.value for t in transports],
        )

    @staticmethod
    def credential_id_of(response: dict[str, Any]) -> str | None:
        """The credential id an assertion response claims to come from."""
        credential_id = response.get("id") if isinstance(response, dict) else None
        return credential_id if isinstance(credential_id, str) and credential_id else None

    def verify_authentication(
        self, response: dict[str, Any], challenge: str, public_key: str
    ) -> int:
        """Verify an assertion signature and return the authenticator's new sign count.

        Counter monotonicity is checked by the caller.

        Raises:
            PasskeyVerificationFailed: If the response is malformed or doesn't verify
        """
        try:
            verified = verify_authentication_response(
                credential=parse_authentication_credential_json(response),
                expected_challenge=base64url_to_bytes(challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(public_key),
                credential_current_sign_count=0,
                require_user_verification=True,
            )
        except WebAuthnException as e:
            logger.info(f"Passkey assertion rejected: {e}")
            raise PasskeyVerificationFailed() from e
        return verified.new_sign_count


relying_party = RelyingParty(settings.rp_id, settings.site_name, settings.origin)
