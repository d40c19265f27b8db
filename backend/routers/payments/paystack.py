"""
Thin async client for the Paystack transaction API
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from config import PAYSTACK_SECRET_KEY, PAYSTACK_BASE_URL, PAYSTACK_TIMEOUT_SECONDS
from models import ApiKey
from typing import Any, Dict, List, Optional
import hashlib
import hmac
import httpx
import logging

logger = logging.getLogger(__name__)

# Paystack mobile money provider codes for Ghana
MOBILE_MONEY_PROVIDER_CODES = {
    "MTN": "mtn",
    "VODAFONE": "vod",
    "AIRTELTIGO": "atl",
}


class PaystackError(Exception):
    """Gateway rejected the call or could not be reached"""


class PaystackNotConfigured(PaystackError):
    pass


async def get_paystack_secret_key(db: AsyncSession) -> str:
    """Active secret key from the admin-managed ApiKey table, falling back to the environment"""
    result = await db.execute(
        select(ApiKey.value)
        .where(
            ApiKey.service == "paystack",
            ApiKey.key_type == "secret",
            ApiKey.is_active == True
        )
        .order_by(ApiKey.updated_at.desc())
        .limit(1)
    )
    key = result.scalar_one_or_none() or PAYSTACK_SECRET_KEY
    if not key:
        raise PaystackNotConfigured("Paystack secret key is not configured")
    return key


def compute_signature(secret_key: str, raw_body: bytes) -> str:
    return hmac.new(secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(secret_key: str, raw_body: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(secret_key, raw_body), signature)


def to_minor_units(amount: float) -> int:
    """GHS to pesewas"""
    return int(round(amount * 100))


class PaystackClient:
    def __init__(self, secret_key: str, base_url: str = PAYSTACK_BASE_URL, timeout: float = PAYSTACK_TIMEOUT_SECONDS):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Paystack {method} {path} failed: {str(e)}")
            raise PaystackError("Payment gateway unreachable")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"Payment gateway error ({response.status_code})"
            logger.error(f"Paystack {method} {path} rejected: {response.status_code} {message}")
            raise PaystackError(message)

        return body.get("data") or {}

    async def initialize_transaction(
        self,
        email: str,
        amount: float,
        reference: str,
        currency: str,
        callback_url: Optional[str] = None,
        channels: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
            "currency": currency,
        }
        if callback_url:
            payload["callback_url"] = callback_url
        if channels:
            payload["channels"] = channels
        if metadata:
            payload["metadata"] = metadata
        return await self._request("POST", "/transaction/initialize", json=payload)

    async def verify_transaction(self, reference: str) -> Dict[str, Any]:
        return await self._request("GET", f"/transaction/verify/{reference}")
