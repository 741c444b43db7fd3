"""Record filters: contact-detail masking and a correlation placeholder."""

import logging
import re

# Local mobile numbers (05X-XXXXXXX) and their +972 international form.
_PHONE = re.compile(r"(?:\+972[-\s]?|0)5\d[-\s]?\d{3}[-\s]?\d{4}")
_EMAIL = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")


def mask_contact_details(text: str) -> str:
    """Replace customer/driver phones and emails with placeholders."""
    if "@" in text:
        text = _EMAIL.sub("[EMAIL]", text)
    return _PHONE.sub("[PHONE]", text)


class PIIFilter(logging.Filter):
    """Mask contact details in both the message template and its arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_contact_details(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(
                mask_contact_details(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        return True


class DefaultCorrelationFilter(logging.Filter):
    """Give records logged outside any ride a ``-`` correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.__dict__.setdefault("correlation_id", "-")
        return True
