"""
HTTP client for communicating with the Catalog service.

This module resolves menu items and addons that are live (published, not
deleted) so orders can snapshot their prices.
"""
import logging
from typing import List, Optional

import httpx

from ..config import CATALOG_SERVICE_URL, SERVICE_CLIENT_TIMEOUT

logger = logging.getLogger(__name__)


def _headers(token: Optional[str]) -> Optional[dict]:
    return {"Authorization": f"Bearer {token}"} if token else None


def _is_live(entry: dict) -> bool:
    return bool(entry.get("is_live", True)) and not entry.get("is_deleted", False)


async def get_live_menu_item(menu_item_id: str, meal_type: str, token: Optional[str] = None) -> Optional[dict]:
    """
    Retrieve a menu item that can be ordered for the given meal.

    Args:
        menu_item_id: Catalog identifier of the menu item
        meal_type: LUNCH or DINNER; the item must be served for this meal
        token: Optional JWT token to authorize the inter-service request

    Returns:
        Menu item data (at least ``id``, ``name`` and ``price``) or None when
        the item is missing, deleted, not live or served for another meal

    Raises:
        httpx.HTTPError: If there's a network error or the service is unavailable
    """
    async with httpx.AsyncClient(timeout=SERVICE_CLIENT_TIMEOUT) as client:
        response = await client.get(
            f"{CATALOG_SERVICE_URL}/menu-items/{menu_item_id}",
            headers=_headers(token),
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        item = response.json()

    if not _is_live(item):
        logger.info(f"Menu item '{menu_item_id}' is not live")
        return None
    if str(item.get("meal_type", "")).upper() != meal_type:
        logger.info(f"Menu item '{menu_item_id}' is not served for {meal_type}")
        return None
    return item


async def get_live_addons(addon_ids: List[str], token: Optional[str] = None) -> List[dict]:
    """
    Retrieve the live addons among the requested ids.

    Missing, deleted or unpublished addons are left out of the result; the
    caller decides whether a partial match is acceptable.

    Raises:
        httpx.HTTPError: If there's a network error or the service is unavailable
    """
    if not addon_ids:
        return []

    async with httpx.AsyncClient(timeout=SERVICE_CLIENT_TIMEOUT) as client:
        response = await client.get(
            f"{CATALOG_SERVICE_URL}/addons",
            params={"ids": ",".join(addon_ids)},
            headers=_headers(token),
        )
        response.raise_for_status()
        addons = response.json()

    wanted = set(addon_ids)
    return [addon for addon in addons if str(addon.get("id")) in wanted and _is_live(addon)]
