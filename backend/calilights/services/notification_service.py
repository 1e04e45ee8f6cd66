# backend/calilights/services/notification_service.py
"""
Push notification fan-out through OneSignal.

Notifications are best-effort: an unconfigured service logs a warning and
reports False, and callers in the lifecycle wrap every send in safe_execute so
a push outage never blocks a mission transition.

Usage:
    from calilights.services.notification_service import notification_service

    await notification_service.notify_recap_ready(user_ids, chain_name="Night Owls")
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..config import settings
from ..utils.retry import RetryPolicy, run_with_retry

logger = logging.getLogger("calilights.notifications")


class NotificationService:
    """Sends push notifications to participants by external user id."""

    @property
    def is_configured(self) -> bool:
        return bool(settings.onesignal_app_id and settings.onesignal_api_key)

    async def _post(self, body: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=settings.notification_timeout) as client:
            response = await client.post(
                settings.onesignal_api_url,
                json=body,
                headers={"Authorization": f"Basic {settings.onesignal_api_key}"},
            )
            response.raise_for_status()

    async def send(
        self,
        user_ids: Sequence[str],
        heading: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send one notification to a list of users.

        Args:
            user_ids: External user ids (duplicates are removed)
            heading: Notification title
            body: Notification text
            data: Optional payload forwarded to the client app

        Returns:
            True if the provider accepted the notification, False if skipped

        Raises:
            httpx.HTTPError: If the provider keeps failing after retries
        """
        recipients: List[str] = list(dict.fromkeys(str(u) for u in user_ids if u))
        if not recipients:
            return False
        if not self.is_configured:
            logger.warning("OneSignal is not configured; skipping notification")
            return False

        payload: Dict[str, Any] = {
            "app_id": settings.onesignal_app_id,
            "include_external_user_ids": recipients,
            "headings": {"en": heading},
            "contents": {"en": body},
        }
        if data:
            payload["data"] = data

        await run_with_retry(
            self._post, payload,
            policy=RetryPolicy.fast(),
            on_retry=lambda attempt, e: logger.warning(f"Notification retry attempt {attempt}: {e}"),
        )
        logger.info(f"Sent '{heading}' to {len(recipients)} users")
        return True

    async def notify_mission_start(self, user_ids: Sequence[str], prompt: str, mission_id: str) -> bool:
        return await self.send(user_ids, "New mission", prompt, data={"mission_id": mission_id})

    async def notify_recap_ready(self, user_ids: Sequence[str], chain_name: str, mission_id: str) -> bool:
        return await self.send(
            user_ids,
            "Recap is ready",
            f"{chain_name} just fused a new chapter.",
            data={"mission_id": mission_id},
        )

    async def notify_bridge(
        self,
        user_ids: Sequence[str],
        source_chain: str,
        target_chain: str,
        shared_tag: Optional[str] = None,
    ) -> bool:
        suffix = f" over {shared_tag}" if shared_tag else ""
        return await self.send(user_ids, "Bridge formed", f"{source_chain} linked with {target_chain}{suffix}.")


# Global singleton instance
notification_service = NotificationService()
