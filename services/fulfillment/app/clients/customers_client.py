"""
HTTP client for communicating with the Customers service.

This module resolves authenticated identities to customer records and
retrieves the stored delivery address.
"""
import httpx
from typing import Optional

from ..config import CUSTOMERS_SERVICE_URL, SERVICE_CLIENT_TIMEOUT


async def get_customer_by_external_identity(uid: str, token: Optional[str] = None) -> Optional[dict]:
    """
    Look up the customer bound to an external identity.

    Args:
        uid: The ``sub`` claim of the caller's token
        token: Optional JWT token to authorize the inter-service request

    Returns:
        Customer data as a dictionary if found, None otherwise

    Raises:
        httpx.HTTPError: If there's a network error or the service is unavailable
    """
    headers = {"Authorization": f"Bearer {token}"} if token else None
    async with httpx.AsyncClient(timeout=SERVICE_CLIENT_TIMEOUT) as client:
        response = await client.get(f"{CUSTOMERS_SERVICE_URL}/customers/by-uid/{uid}", headers=headers)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()


async def get_customer(customer_id: str, token: Optional[str] = None) -> Optional[dict]:
    """
    Retrieve customer data, including the stored address, from the Customers service.

    Returns:
        Customer data as a dictionary if found, None otherwise

    Raises:
        httpx.HTTPError: If there's a network error or the service is unavailable
    """
    headers = {"Authorization": f"Bearer {token}"} if token else None
    async with httpx.AsyncClient(timeout=SERVICE_CLIENT_TIMEOUT) as client:
        response = await client.get(f"{CUSTOMERS_SERVICE_URL}/customers/{customer_id}", headers=headers)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()
