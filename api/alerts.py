import logging
import time
from typing import Dict, Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)


class AlertWebhook:
    def __init__(self, url: Optional[str] = None):
        url = url if url is not None else config.section('monitoring').get('alert_webhook')
        # Unset ${VAR} placeholders come through verbatim
        if url and not str(url).startswith('${'):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None):
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except Exception as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def persistence_alert(self, symbol: str, error: str):
        await self.send_alert(
            'state_persistence',
            f'{symbol} state could not be persisted: {error}',
            'critical',
            {'symbol': symbol}
        )

    async def cleanup_alert(self, step: str, error: str):
        await self.send_alert(
            'eod_cleanup',
            f'End-of-day {step} failed: {error}',
            'critical',
            {'step': step}
        )

    async def order_alert(self, symbol: str, action: str, level_name: str, level_price: float):
        await self.send_alert(
            'order',
            f'{symbol} {action} at {level_name} {level_price:.2f}',
            'info',
            {
                'symbol': symbol,
                'action': action,
                'level_name': level_name,
                'level_price': level_price,
            }
        )


alert_webhook = AlertWebhook()
