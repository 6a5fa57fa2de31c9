# Push notification fan-out.
#
# One logical notification is delivered to every device a user registered.
# Deliveries run concurrently and independently; a device reporting its
# endpoint gone (404/410) is deleted, any other failure is logged and dropped.
# There is no retry queue: each trigger is delivered at most once per device.

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional, Protocol

import requests
from pywebpush import WebPushException, webpush

from . import db
from .config import PUSH_CONCURRENCY, PUSH_TIMEOUT_SECS, PUSH_TTL_SECS, VAPID_PRIVATE_KEY, VAPID_SUBJECT
from .db import DeviceSubscription

logger = logging.getLogger(__name__)

Outcome = Literal["delivered", "permanent", "transient"]

# Push services answer these when a subscription no longer exists
GONE_STATUS_CODES = (404, 410)

NEW_PUZZLE = ("New Puzzle! 💌", "Your partner sent you a puzzle to solve!")
UNLOCK_REQUESTED = ("Your partner needs help 🆘", "They ran out of guesses and want to read your secret message.")
UNLOCK_GRANTED = ("Message unlocked 🔓", "Your partner revealed the secret message!")
REMINDER_SET = ("Daily Wordle Reminder ⏰", "Don't forget to set a puzzle for your partner!")
REMINDER_SOLVE = ("Daily Wordle Reminder ⏰", "Your partner's puzzle is still waiting for you!")


class DeliveryError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def permanent(self) -> bool:
        return self.status_code in GONE_STATUS_CODES


class PushTransport(Protocol):
    def send(self, subscription: DeviceSubscription, data: str) -> None:
        """Deliver one payload to one device, raising DeliveryError on failure."""


def _urlsafe(key: str) -> str:
    # Devices register standard base64; the push encryption expects the URL-safe alphabet
    return key.replace("+", "-").replace("/", "_").rstrip("=")


class WebPushTransport:
    """Web Push (RFC 8030) delivery signed with VAPID."""

    def __init__(
        self,
        vapid_private_key: Optional[str] = VAPID_PRIVATE_KEY,
        vapid_subject: str = VAPID_SUBJECT,
        ttl: int = PUSH_TTL_SECS,
        timeout: float = PUSH_TIMEOUT_SECS,
    ) -> None:
        if not vapid_private_key:
            raise ValueError("VAPID_PRIVATE_KEY is not configured")
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.ttl = ttl
        self.timeout = timeout
        self.session = requests.Session()

    def send(self, subscription: DeviceSubscription, data: str) -> None:
        subscription_info = {
            "endpoint": subscription.endpoint,
            "keys": {"p256dh": _urlsafe(subscription.p256dh), "auth": _urlsafe(subscription.auth)},
        }
        try:
            webpush(
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=self.vapid_private_key,
                # webpush fills in aud/exp, so hand it a fresh dict each time
                vapid_claims={"sub": self.vapid_subject},
                ttl=self.ttl,
                timeout=self.timeout,
                requests_session=self.session,
            )
        except WebPushException as ex:
            status_code = ex.response.status_code if ex.response is not None else None
            raise DeliveryError(str(ex), status_code=status_code) from ex
        except requests.RequestException as ex:
            raise DeliveryError(f"Push request failed: {ex}") from ex


@dataclass
class FanoutReport:
    user_id: str
    delivered: List[int] = field(default_factory=list)
    transient: List[int] = field(default_factory=list)
    pruned: List[int] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.transient) + len(self.pruned)


class NotificationFanout:
    def __init__(
        self,
        transport: PushTransport,
        *,
        resolver: Callable[[str], List[DeviceSubscription]] = db.list_subscriptions,
        pruner: Callable[[int], bool] = db.delete_subscription,
        concurrency: int = PUSH_CONCURRENCY,
    ) -> None:
        self.transport = transport
        self.resolver = resolver
        self.pruner = pruner
        self.concurrency = max(1, concurrency)

    async def resolve_subscriptions(self, user_id: str) -> List[DeviceSubscription]:
        return await asyncio.to_thread(self.resolver, user_id)

    async def deliver(
        self,
        subscription: DeviceSubscription,
        payload: Dict[str, str],
        semaphore: Optional[asyncio.Semaphore] = None,
    ) -> Outcome:
        data = json.dumps(payload)
        try:
            if semaphore is None:
                await asyncio.to_thread(self.transport.send, subscription, data)
            else:
                async with semaphore:
                    await asyncio.to_thread(self.transport.send, subscription, data)
        except DeliveryError as ex:
            if ex.permanent:
                await self._prune(subscription)
                return "permanent"
            logger.warning(
                "Push delivery failed: %s",
                ex,
                extra={"user_id": subscription.user_id, "endpoint": subscription.endpoint, "status_code": ex.status_code},
            )
            return "transient"
        except Exception as ex:
            logger.error(
                "Unexpected error delivering push: %s",
                ex,
                exc_info=ex,
                extra={"user_id": subscription.user_id, "endpoint": subscription.endpoint},
            )
            return "transient"
        return "delivered"

    async def notify(self, user_id: str, title: str, body: str) -> FanoutReport:
        report = FanoutReport(user_id=user_id)
        subscriptions = await self.resolve_subscriptions(user_id)
        if not subscriptions:
            logger.info("No subscriptions found for user", extra={"user_id": user_id})
            return report

        payload = {"title": title, "body": body}
        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes = await asyncio.gather(*[self.deliver(sub, payload, semaphore) for sub in subscriptions])

        for sub, outcome in zip(subscriptions, outcomes):
            if outcome == "delivered":
                report.delivered.append(sub.id)
            elif outcome == "permanent":
                report.pruned.append(sub.id)
            else:
                report.transient.append(sub.id)

        logger.info(
            "Sent to %d of %d devices (%d pruned)",
            len(report.delivered),
            len(subscriptions),
            len(report.pruned),
            extra={"user_id": user_id},
        )
        return report

    async def notify_many(self, user_ids: List[str], title: str, body: str) -> List[FanoutReport]:
        # Each user's fan-out is independent; one failing user never blocks the rest
        results = await asyncio.gather(*[self.notify(u, title, body) for u in user_ids], return_exceptions=True)
        reports: List[FanoutReport] = []
        for user_id, result in zip(user_ids, results):
            if isinstance(result, BaseException):
                logger.error("Fan-out failed: %s", result, exc_info=result, extra={"user_id": user_id})
                continue
            reports.append(result)
        return reports

    async def _prune(self, subscription: DeviceSubscription) -> None:
        logger.info("Deleting invalid subscription", extra={"user_id": subscription.user_id, "endpoint": subscription.endpoint})
        try:
            await asyncio.to_thread(self.pruner, subscription.id)
        except Exception as ex:
            logger.error("Failed to delete subscription: %s", ex, exc_info=ex, extra={"endpoint": subscription.endpoint})
