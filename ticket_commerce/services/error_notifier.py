"""
Discord alarm for server-side failures.

Configuration and reconciliation errors are bugs or operator mistakes, not
caller mistakes; they are posted to a Discord webhook when one is set.
"""
import httpx
import traceback
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging
from ticket_commerce.config import settings

logger = logging.getLogger(__name__)


class DiscordErrorNotifier:
    """Send error notifications to Discord webhook"""

    def __init__(self, webhook_url: str, client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self.client = client

    def build_payload(self, error: Exception, context: Optional[Dict[str, Any]] = None) -> dict:
        error_type = type(error).__name__
        error_message = getattr(error, 'message', None) or str(error)
        error_traceback = ''.join(traceback.format_exception(type(error), error, error.__traceback__))

        embed = {
            "title": f"Error: {error_type}",
            "description": error_message[:2000] if error_message else "No message",
            "color": 15158332,  # Red
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "fields": []
        }

        details = getattr(error, 'details', None)
        if details:
            embed["fields"].append({
                "name": "Details",
                "value": "\n".join(f"**{k}:** {v}" for k, v in details.items())[:1024],
                "inline": False
            })

        if context:
            embed["fields"].append({
                "name": "Context",
                "value": "\n".join(f"**{k}:** {v}" for k, v in context.items())[:1024],
                "inline": False
            })

        embed["fields"].append({
            "name": "Traceback",
            "value": f"```python\n{error_traceback[-900:]}\n```",
            "inline": False
        })

        embed["fields"].append({
            "name": "Environment",
            "value": f"**Env:** {settings.app_env}",
            "inline": True
        })

        return {
            "embeds": [embed],
            "username": "Ticket Commerce Error Monitor"
        }

    async def send_error(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        """Post the error; delivery failures are logged, never raised"""
        payload = self.build_payload(error, context)
        try:
            if self.client is not None:
                response = await self.client.post(self.webhook_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(self.webhook_url, json=payload)
            if response.status_code == 204:
                logger.info(f"Error notification sent: {type(error).__name__}")
            else:
                logger.warning(f"Discord webhook answered {response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to send error to Discord: {e}")


# Global error notifier instance
error_notifier = None
if settings.discord_error_webhook_url:
    error_notifier = DiscordErrorNotifier(settings.discord_error_webhook_url)


async def notify_error(error: Exception, context: Optional[Dict[str, Any]] = None):
    if error_notifier is None:
        return
    await error_notifier.send_error(error, context)
