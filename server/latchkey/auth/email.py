"""Delivery of one-time codes and account notices.

The console backend writes messages to the log and is the default. The SES
backend sends real email through AWS SES using the ambient AWS credentials.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import boto3
from botocore.exceptions import ClientError

from latchkey.config import settings
from latchkey.db.models import AttemptPurpose

logger = logging.getLogger(__name__)

CODE_EXPIRE_MINUTES = 15


def _code_subject(purpose: AttemptPurpose) -> str:
    if purpose == AttemptPurpose.SIGNUP:
        return f"Confirm your {settings.site_name} account"
    return f"Sign in to {settings.site_name}"


def _code_text(code: str, purpose: AttemptPurpose) -> str:
    action = "finish signing up" if purpose == AttemptPurpose.SIGNUP else "sign in"
    return f"""{_code_subject(purpose)}

Enter this code to {action}. It expires in {CODE_EXPIRE_MINUTES} minutes.

    {code}

If you didn't request this email, you can safely ignore it.
"""


def _code_html(code: str, purpose: AttemptPurpose) -> str:
    action = "finish signing up" if purpose == AttemptPurpose.SIGNUP else "sign in"
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; padding: 20px; max-width: 600px; margin: 0 auto;">
    <h1 style="color: #333; font-size: 24px;">{_code_subject(purpose)}</h1>
    <p style="color: #666; font-size: 16px; line-height: 1.5;">
        Enter this code to {action}. It expires in {CODE_EXPIRE_MINUTES} minutes.
    </p>
    <p style="margin: 30px 0; font-size: 32px; font-family: monospace; letter-spacing: 6px; color: #000;">
        {code}
    </p>
    <p style="color: #999; font-size: 14px;">
        If you didn't request this email, you can safely ignore it.
    </p>
</body>
</html>
"""


def _unknown_account_text(signup_url: str) -> str:
    return f"""Sign in to {settings.site_name}

Someone tried to sign in to {settings.site_name} using this email address,
but there is no account registered for it.

If you want to create an account, please visit: {signup_url}

If this wasn't you, you can safely ignore this email.
"""


class Notifier(ABC):
    """Sends auth messages to users. Returns True when a message was handed off."""

    @abstractmethod
    def send_code(self, to_email: str, code: str, purpose: AttemptPurpose) -> bool: ...

    @abstractmethod
    def send_unknown_account(self, to_email: str, signup_url: str) -> bool: ...


class ConsoleNotifier(Notifier):
    """Writes messages to the log instead of sending them."""

    def send_code(self, to_email: str, code: str, purpose: AttemptPurpose) -> bool:
        logger.info(f"[{purpose.value} code] to={to_email} code={code}")
        return True

    def send_unknown_account(self, to_email: str, signup_url: str) -> bool:
        logger.info(f"[unknown account] to={to_email} signup_url={signup_url}")
        return True


def get_ses_client() -> Any:
    """Get boto3 SES client."""
    return boto3.client("ses", region_name=settings.ses_region)


class SESNotifier(Notifier):
    """Sends email via AWS SES."""

    def __init__(self, client: Any | None = None) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_ses_client()
        return self._client

    def send_code(self, to_email: str, code: str, purpose: AttemptPurpose) -> bool:
        return self._send(
            to_email,
            _code_subject(purpose),
            _code_text(code, purpose),
            _code_html(code, purpose),
        )

    def send_unknown_account(self, to_email: str, signup_url: str) -> bool:
        return self._send(
            to_email, f"Sign in to {settings.site_name}", _unknown_account_text(signup_url)
        )

    def _send(
        self, to_email: str, subject: str, text_body: str, html_body: str | None = None
    ) -> bool:
        body: dict[str, Any] = {"Text": {"Data": text_body, "Charset": "UTF-8"}}
        if html_body:
            body["Html"] = {"Data": html_body, "Charset": "UTF-8"}

        kwargs: dict[str, Any] = {
            "Source": settings.ses_sender_email,
            "Destination": {"ToAddresses": [to_email]},
            "Message": {"Subject": {"Data": subject, "Charset": "UTF-8"}, "Body": body},
        }
        if settings.ses_configuration_set:
            kwargs["ConfigurationSetName"] = settings.ses_configuration_set

        try:
            response = self.client.send_email(**kwargs)
            logger.info(f"Auth email sent to {to_email}, MessageId: {response['MessageId']}")
            return True
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            error_message = e.response.get("Error", {}).get("Message", str(e))
            logger.error(f"Failed to send auth email to {to_email}: {error_code} - {error_message}")
            return False


def get_notifier() -> Notifier:
    """Build the notifier selected by EMAIL_BACKEND."""
    if settings.email_backend == "ses":
        return SESNotifier()
    return ConsoleNotifier()
