import logging
from typing import Callable, Dict, Optional

import resend

from .helpers import normalize_email

TEMPLATE_SUBJECTS = {
    "verification-code": "Verify Your Account - RangLeela",
    "welcome": "Welcome to RangLeela!",
    "order-confirmation": "Order Confirmed - RangLeela",
    "delivery": "Your Order Has Been Delivered - RangLeela",
    "contact-reply": "Re: Your message to RangLeela",
}


class Notifier:
    """Sends transactional emails through Resend.

    ``render`` turns a template name plus data into HTML. ``send`` never
    raises; callers get ``{"success": bool, "error": str}`` back and decide
    whether a failure matters.
    """

    def __init__(
        self,
        api_key: str,
        sender_email: str,
        render: Callable[..., str],
        logger: Optional[logging.Logger] = None,
        max_attempts: int = 2,
        timeout: int = 10,
    ):
        self.api_key = (api_key or "").strip()
        self.sender_email = sender_email
        self.render = render
        self.logger = logger or logging.getLogger(__name__)
        self.max_attempts = max(1, max_attempts)
        self.http_client = resend.RequestsClient(timeout=timeout)

    def build_payload(self, template_name: str, recipient: str, data: Dict) -> Dict:
        subject = data.get("subject") or TEMPLATE_SUBJECTS[template_name]
        return {
            "from": f"RangLeela <{self.sender_email}>",
            "to": [recipient],
            "subject": subject,
            "html": self.render(template_name, **data),
        }

    def send(self, template_name: str, recipient: str, data: Optional[Dict] = None):
        normalized_recipient = normalize_email(recipient)
        if not normalized_recipient:
            return {"success": False, "error": "Missing recipient email."}
        if template_name not in TEMPLATE_SUBJECTS:
            return {"success": False, "error": f"Unknown template: {template_name}"}
        if not self.api_key:
            return {"success": False, "error": "Resend API key is not configured."}

        try:
            payload = self.build_payload(template_name, normalized_recipient, data or {})
        except Exception as exc:
            self.logger.error("Unable to render %s email: %s", template_name, exc)
            return {"success": False, "error": str(exc)}

        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            sent, last_error = self._deliver(payload)
            if sent:
                return {"success": True}
            self.logger.warning(
                "Email %s to %s failed (attempt %s/%s): %s",
                template_name,
                normalized_recipient,
                attempt,
                self.max_attempts,
                last_error,
            )

        return {"success": False, "error": last_error}

    def _deliver(self, payload: Dict[str, object]):
        previous_api_key = getattr(resend, "api_key", None)
        previous_client = resend.default_http_client
        resend.api_key = self.api_key
        resend.default_http_client = self.http_client
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key
            resend.default_http_client = previous_client

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None
