"""Outbound channel delivery with per-channel rate limiting."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from ..core.config import settings
from ..models.models import Channel
from .repositories import CustomerProfile

LOGGER = logging.getLogger(__name__)


class DeliveryError(RuntimeError):
    """A send failed and may succeed on a later attempt."""


class PermanentDeliveryError(DeliveryError):
    """A send can never succeed, e.g. the customer has no address for the channel."""


@dataclass
class DispatchResult:
    external_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ChannelSender(ABC):
    @abstractmethod
    def send(self, recipient: str, content: str) -> DispatchResult:
        """Deliver ``content``; raise ``DeliveryError`` on failure."""


class ConsoleSender(ChannelSender):
    """Logs the message instead of calling a provider API."""

    def __init__(self, channel: Channel):
        self.channel = channel

    def send(self, recipient: str, content: str) -> DispatchResult:
        LOGGER.info('Sending %s message to %s (%s chars)', self.channel.value, recipient, len(content))
        return DispatchResult(
            external_id=f'{self.channel.value.lower()}-{uuid.uuid4().hex[:12]}',
            metadata={'channel': self.channel.value},
        )


class TwilioSmsSender(ChannelSender):
    def __init__(self, client: TwilioClient, from_number: str):
        self.client = client
        self.from_number = from_number

    def send(self, recipient: str, content: str) -> DispatchResult:
        try:
            resp = self.client.messages.create(body=content, from_=self.from_number, to=recipient)
        except TwilioRestException as exc:
            raise DeliveryError(f'SMS send failed: {exc.msg}') from exc
        return DispatchResult(external_id=resp.sid, metadata={'channel': 'SMS'})


class RateLimiter:
    """Simple in-memory rate limiter to respect provider quotas."""

    def __init__(self, per_minute: int):
        self.per_minute = max(per_minute, 1)
        self._window_start = time.monotonic()
        self._sent = 0
        self._lock = threading.Lock()

    def wait_for_slot(self):
        window = 60.0
        with self._lock:
            now = time.monotonic()
            if now - self._window_start >= window:
                self._window_start = now
                self._sent = 0
            if self._sent < self.per_minute:
                self._sent += 1
                return
            sleep_for = window - (now - self._window_start)
            if sleep_for > 0:
                time.sleep(sleep_for)
            self._window_start = time.monotonic()
            self._sent = 1


RECIPIENT_FIELDS = {
    Channel.LINE: 'line_user_id',
    Channel.INSTAGRAM: 'instagram_id',
    Channel.EMAIL: 'email',
    Channel.SMS: 'phone_number',
}


def recipient_for(profile: CustomerProfile, channel: Channel) -> str:
    address = getattr(profile, RECIPIENT_FIELDS[channel], None)
    if not address:
        raise PermanentDeliveryError(f'Customer {profile.id} has no {channel.value} address')
    return address


class BulkMessenger:
    """Route personalized messages to the sender registered for each channel."""

    def __init__(self, senders: Mapping[Channel, ChannelSender], limits: Optional[Mapping[Channel, int]] = None):
        self.senders = dict(senders)
        limits = limits or {}
        self.limiters = {channel: RateLimiter(limits[channel]) for channel in self.senders if channel in limits}

    @classmethod
    def from_settings(cls) -> 'BulkMessenger':
        senders: dict[Channel, ChannelSender] = {
            Channel.LINE: ConsoleSender(Channel.LINE),
            Channel.INSTAGRAM: ConsoleSender(Channel.INSTAGRAM),
            Channel.EMAIL: ConsoleSender(Channel.EMAIL),
        }
        if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_SMS_FROM:
            client = TwilioClient(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
            senders[Channel.SMS] = TwilioSmsSender(client, settings.TWILIO_SMS_FROM)
        else:
            LOGGER.warning('Twilio is not configured; SMS messages will only be logged')
            senders[Channel.SMS] = ConsoleSender(Channel.SMS)
        limits = {
            Channel.LINE: settings.LINE_RATE_LIMIT_PER_MIN,
            Channel.INSTAGRAM: settings.INSTAGRAM_RATE_LIMIT_PER_MIN,
            Channel.EMAIL: settings.EMAIL_RATE_LIMIT_PER_MIN,
            Channel.SMS: settings.SMS_RATE_LIMIT_PER_MIN,
        }
        return cls(senders, limits)

    def dispatch(self, channel: Channel, profile: CustomerProfile, content: str) -> DispatchResult:
        sender = self.senders.get(channel)
        if sender is None:
            raise PermanentDeliveryError(f'No sender configured for channel {channel.value}')
        recipient = recipient_for(profile, channel)
        limiter = self.limiters.get(channel)
        if limiter is not None:
            limiter.wait_for_slot()
        return sender.send(recipient, content)
