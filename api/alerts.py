import asyncio
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from config import config
from config.utils import get_config_section


logger = logging.getLogger(__name__)


class AlertWebhook:
    def __init__(self, url: Optional[str] = None):
        if url is None:
            url = get_config_section(config, 'monitoring').get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Optional[Dict[str, Any]] = None):
        if not self.enabled:
            logger.warning("[Alert] %s: %s - %s", severity.upper(), alert_type, message)
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {},
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=5),
                ) as response:
                    if response.status >= 300:
                        logger.error("[Alert] Webhook failed with status %s", response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def risk_limit_alert(self, kind: str, details: Dict[str, Any]):
        await self.send_alert('risk_limit', f'Risk limit hit: {kind}', 'critical', {'kind': kind, **details})

    async def emergency_stop_alert(self, reason: str, cancelled_orders: int):
        await self.send_alert(
            'emergency_stop',
            f'Emergency stop: {reason}',
            'critical',
            {'reason': reason, 'cancelled_orders': cancelled_orders},
        )

    async def trading_error_alert(self, symbol: Optional[str], stage: str, error: str):
        await self.send_alert(
            'trading_error',
            f'{stage} failed for {symbol or "cycle"}: {error}',
            'warning',
            {'symbol': symbol, 'stage': stage, 'error': error},
        )
