"""
services/payment/applepay.py
Apple Pay merchant validation for the web payment sheet.
"""

import logging
import ssl
from urllib.parse import urlparse

import httpx

from config.settings import settings
from shared.exceptions import PaymentGatewayError, PaymentGatewayTimeout

logger = logging.getLogger(__name__)


def is_apple_validation_url(url: str) -> bool:
    parsed = urlparse(url)
    host = parsed.hostname or ""
    return parsed.scheme == "https" and (host == "apple.com" or host.endswith(".apple.com"))


async def validate_merchant(validation_url: str) -> dict:
    """
    Exchange the sheet's validationURL for an opaque merchant session,
    authenticating with the merchant identity certificate.
    """
    if not is_apple_validation_url(validation_url):
        raise PaymentGatewayError("Validation URL must be an apple.com HTTPS endpoint")
    if not settings.APPLE_PAY_CERT_PATH or not settings.APPLE_PAY_KEY_PATH:
        raise PaymentGatewayError("Apple Pay is not configured")

    payload = {
        "merchantIdentifier": settings.APPLE_PAY_MERCHANT_ID,
        "displayName": settings.APPLE_PAY_DISPLAY_NAME,
        "initiative": "web",
        "initiativeContext": settings.APPLE_PAY_DOMAIN,
    }
    ssl_context = ssl.create_default_context()
    ssl_context.load_cert_chain(settings.APPLE_PAY_CERT_PATH, settings.APPLE_PAY_KEY_PATH)
    try:
        async with httpx.AsyncClient(
            verify=ssl_context,
            timeout=settings.TELR_TIMEOUT_SECONDS,
        ) as client:
            response = await client.post(validation_url, json=payload)
    except httpx.TimeoutException:
        raise PaymentGatewayTimeout("Apple Pay merchant validation timed out")
    except httpx.HTTPError as e:
        logger.error(f"Apple Pay merchant validation failed: {e}")
        raise PaymentGatewayError("Apple Pay merchant validation failed")

    if response.status_code != 200:
        logger.error(f"Apple Pay merchant validation returned {response.status_code}")
        raise PaymentGatewayError("Apple Pay merchant validation failed")
    return response.json()
