"""
WhatsApp notifications for order events.

Delivery is best effort: one attempt, failures are logged and swallowed.
"""
import logging
import os
import re
from typing import Optional

import requests
from fastapi import BackgroundTasks

logger = logging.getLogger("plantify.notifications")

TWILIO_SID = os.getenv("TWILIO_SID")
TWILIO_AUTH = os.getenv("TWILIO_AUTH")
TWILIO_WHATSAPP_NUMBER = os.getenv("TWILIO_WHATSAPP_NUMBER")
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "91")
NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", "10"))

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


def normalize_phone(number: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE) -> Optional[str]:
    """Turn a raw phone number into a WhatsApp address, e.g. "98765 43210" -> "whatsapp:+919876543210"."""
    if not number:
        return None
    digits = re.sub(r"\D", "", number)
    if not digits:
        return None
    if len(digits) <= 10 or not digits.startswith(country_code):
        digits = country_code + digits
    return f"whatsapp:+{digits}"


class WhatsAppNotifier:
    def __init__(self, sid: Optional[str] = TWILIO_SID, auth_token: Optional[str] = TWILIO_AUTH,
                 from_number: Optional[str] = TWILIO_WHATSAPP_NUMBER, timeout: float = NOTIFY_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.sid = sid
        self.auth_token = auth_token
        if from_number and not from_number.startswith("whatsapp:"):
            from_number = f"whatsapp:{from_number}"
        self.from_number = from_number
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.sid and self.auth_token and self.from_number)

    def notify(self, phone: Optional[str], message: str) -> bool:
        to = normalize_phone(phone)
        if not to or not message:
            return False
        if not self.configured:
            logger.info("WhatsApp not configured, skipping message to %s", to)
            return False
        try:
            response = self.session.post(
                TWILIO_MESSAGES_URL.format(sid=self.sid),
                data={"From": self.from_number, "To": to, "Body": message},
                auth=(self.sid, self.auth_token),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("WhatsApp error for %s: %s", to, exc)
            return False
        logger.info("WhatsApp sent to %s", to)
        return True


class DeferredNotifier:
    """Queues messages on the response's background tasks so delivery never delays the reply."""

    def __init__(self, notifier, background_tasks: BackgroundTasks):
        self.notifier = notifier
        self.background_tasks = background_tasks

    def notify(self, phone: Optional[str], message: str) -> None:
        if phone:
            self.background_tasks.add_task(self.notifier.notify, phone, message)

