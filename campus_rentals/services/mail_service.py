from __future__ import annotations

import logging
import os

import resend


LOGGER = logging.getLogger("campus_rentals.mail")

DEFAULT_FROM_EMAIL = "CampusRent <no-reply@campusrent.app>"


def _verification_email_html(code: str) -> str:
    return f"""
      <div style="font-family: Arial, sans-serif; padding: 20px;">
        <h2>Welcome to CampusRent!</h2>
        <p>You are registering for the marketplace at your university.</p>
        <p>Your verification code is:</p>
        <h1 style="color: #2563eb; letter-spacing: 5px;">{code}</h1>
        <p>Enter this code on the verification screen to unlock your account.</p>
      </div>
    """


def send_verification_email(to_address: str, code: str) -> bool:
    api_key = (os.environ.get("RESEND_API_KEY") or "").strip()
    if not api_key:
        LOGGER.warning("Skipping verification email to %s: RESEND_API_KEY not set.", to_address)
        return False

    resend.api_key = api_key
    try:
        resend.Emails.send(
            {
                "from": os.environ.get("RESEND_FROM_EMAIL", DEFAULT_FROM_EMAIL),
                "to": to_address,
                "subject": "Verify your CampusRent account",
                "html": _verification_email_html(code),
                "text": f"Your CampusRent verification code is {code}.",
            }
        )
    except Exception:
        LOGGER.error("Failed to send verification email to %s", to_address, exc_info=True)
        return False
    LOGGER.info("Verification email sent to %s", to_address)
    return True
