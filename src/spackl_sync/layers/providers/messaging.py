"""
メッセージングゲートウェイ - SMS送信の抽象とアダプター
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from ...utils.concurrency import RateLimiter

logger = logging.getLogger(__name__)


class MessageStatus(Enum):
    """送信ステータス"""
    SENT = "sent"
    FAILED = "failed"


@dataclass
class MessageSendResult:
    """送信結果"""
    status: MessageStatus
    phone_number: str
    attempt_time: datetime = field(default_factory=datetime.now)
    response_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    def is_successful(self) -> bool:
        return self.status == MessageStatus.SENT


class MessagingGateway(ABC):
    """メッセージングゲートウェイ抽象基底クラス"""

    @abstractmethod
    async def send(self, phone_number: str, text: str) -> MessageSendResult:
        """送信失敗は例外ではなく FAILED の結果で返す"""


class WebhookSmsGateway(MessagingGateway):
    """Webhook経由のSMS送信"""

    def __init__(self,
                 webhook_url: str,
                 api_token: Optional[str] = None,
                 sender: Optional[str] = None,
                 rate_limit_per_minute: int = 30,
                 timeout_seconds: float = 10.0):
        self.webhook_url = webhook_url
        self.api_token = api_token
        self.sender = sender
        self.timeout_seconds = timeout_seconds
        self.rate_limiter = RateLimiter(rate_limit_per_minute, 60)

    async def send(self, phone_number: str, text: str) -> MessageSendResult:
        if not await self.rate_limiter.acquire():
            wait = self.rate_limiter.wait_time()
            logger.warning(f"SMS rate limited, next slot in {wait:.1f}s")
            return MessageSendResult(
                status=MessageStatus.FAILED,
                phone_number=phone_number,
                error_message=f"Rate limited (retry in {wait:.1f}s)"
            )

        payload = {"to": phone_number, "body": text}
        if self.sender:
            payload["from"] = self.sender

        headers = {}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.webhook_url, json=payload, headers=headers) as response:
                    response_text = await response.text()

                    if 200 <= response.status < 300:
                        logger.info(f"SMS sent to {phone_number}")
                        return MessageSendResult(
                            status=MessageStatus.SENT,
                            phone_number=phone_number,
                            response_data={"status_code": response.status, "response": response_text}
                        )

                    logger.error(f"SMS webhook returned {response.status}: {response_text}")
                    return MessageSendResult(
                        status=MessageStatus.FAILED,
                        phone_number=phone_number,
                        response_data={"status_code": response.status},
                        error_message=f"Webhook returned {response.status}: {response_text}"
                    )

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"SMS send failed: {e}")
            return MessageSendResult(
                status=MessageStatus.FAILED,
                phone_number=phone_number,
                error_message=str(e) or e.__class__.__name__
            )


class LoggingGateway(MessagingGateway):
    """送信せずにログへ記録するゲートウェイ（SMS無効時）"""

    def __init__(self):
        self.sent: List[MessageSendResult] = []
        self.messages: List[Dict[str, str]] = []

    async def send(self, phone_number: str, text: str) -> MessageSendResult:
        logger.info(f"SMS (not sent, messaging disabled) to {phone_number}: {text}")
        result = MessageSendResult(status=MessageStatus.SENT, phone_number=phone_number)
        self.sent.append(result)
        self.messages.append({"phone_number": phone_number, "text": text})
        return result
