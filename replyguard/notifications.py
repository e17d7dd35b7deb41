"""
Push notification delivery for replyguard.

Owners register device tokens from several provider families. The Notifier
groups an owner's tokens by family, sends through the matching provider and
prunes tokens the provider reports as no longer registered.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

import httpx

from replyguard.models import PushToken
from replyguard.storage import GuardrailStore

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_BATCH_SIZE = 100
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
DEFAULT_TIMEOUT_SECONDS = 5.0

INVALID_TOKEN_ERRORS = frozenset({
    "DeviceNotRegistered",
    "messaging/invalid-registration-token",
    "messaging/registration-token-not-registered",
    "UNREGISTERED",
})

_APNS_TOKEN = re.compile(r"^[0-9a-fA-F]{64}$")


class ProviderFamily(str, Enum):
    """Push token provider families."""
    EXPO = "expo"
    FCM = "fcm"
    APNS = "apns"


def detect_provider(token: str) -> ProviderFamily:
    """Classify a raw token. Unrecognized formats are treated as FCM."""
    if not token or not isinstance(token, str):
        return ProviderFamily.FCM
    if token.startswith("ExponentPushToken[") and token.endswith("]"):
        return ProviderFamily.EXPO
    if _APNS_TOKEN.match(token):
        return ProviderFamily.APNS
    return ProviderFamily.FCM


@dataclass
class DeliveryResult:
    """Outcome for one token."""
    token: str
    success: bool
    error: Optional[str] = None
    invalid_token: bool = False


@dataclass
class NotificationReport:
    """Outcome of notifying one owner."""
    owner_id: str
    results: list[DeliveryResult] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


class NotificationProvider(Protocol):
    """Sends one payload to a batch of tokens of a single family."""

    def send(
        self, tokens: list[str], title: str, body: str, data: dict[str, Any]
    ) -> list[DeliveryResult]:
        ...


def _is_invalid(error: Optional[str]) -> bool:
    return bool(error) and any(code in error for code in INVALID_TOKEN_ERRORS)


class ExpoPushProvider:
    """
    Expo push service provider.

    Sends in batches; the service answers with one ticket per message, in order.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.access_token = access_token
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def send(
        self, tokens: list[str], title: str, body: str, data: dict[str, Any]
    ) -> list[DeliveryResult]:
        results: list[DeliveryResult] = []
        for start in range(0, len(tokens), EXPO_BATCH_SIZE):
            results.extend(self._send_batch(tokens[start:start + EXPO_BATCH_SIZE], title, body, data))
        return results

    def _send_batch(
        self, tokens: list[str], title: str, body: str, data: dict[str, Any]
    ) -> list[DeliveryResult]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        messages = [
            {"to": token, "title": title, "body": body, "data": data, "sound": "default", "priority": "high"}
            for token in tokens
        ]
        try:
            response = self._client.post(EXPO_PUSH_URL, json=messages, headers=headers)
            response.raise_for_status()
            tickets = response.json().get("data", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Expo push request failed for %d tokens: %s", len(tokens), e)
            return [DeliveryResult(token=t, success=False, error=str(e)) for t in tokens]

        results = []
        for index, token in enumerate(tokens):
            ticket = tickets[index] if index < len(tickets) else {}
            if ticket.get("status") == "ok":
                results.append(DeliveryResult(token=token, success=True))
                continue
            error = (ticket.get("details") or {}).get("error") or ticket.get("message") or "Unknown error"
            results.append(
                DeliveryResult(token=token, success=False, error=error, invalid_token=_is_invalid(error))
            )
        return results


class FCMPushProvider:
    """
    Firebase Cloud Messaging HTTP v1 provider.

    FCM v1 accepts one token per request, so each token gets its own call.
    APNs device tokens are delivered through FCM's apns block.
    """

    def __init__(
        self,
        project_id: str,
        access_token: str,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.project_id = project_id
        self.access_token = access_token
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def send(
        self, tokens: list[str], title: str, body: str, data: dict[str, Any]
    ) -> list[DeliveryResult]:
        url = FCM_SEND_URL.format(project_id=self.project_id)
        headers = {"Authorization": f"Bearer {self.access_token}"}
        # FCM data values must be strings
        str_data = {str(k): str(v) for k, v in data.items()}
        results = []
        for token in tokens:
            payload = {
                "message": {
                    "token": token,
                    "notification": {"title": title, "body": body},
                    "data": str_data,
                    "apns": {"payload": {"aps": {"sound": "default"}}},
                }
            }
            try:
                response = self._client.post(url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                logger.error("FCM request failed: %s", e)
                results.append(DeliveryResult(token=token, success=False, error=str(e)))
                continue

            if response.is_success:
                results.append(DeliveryResult(token=token, success=True))
                continue
            error = self._error_code(response)
            results.append(
                DeliveryResult(token=token, success=False, error=error, invalid_token=_is_invalid(error))
            )
        return results

    @staticmethod
    def _error_code(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
        except ValueError:
            return f"HTTP {response.status_code}"
        for detail in error.get("details", []):
            if detail.get("errorCode"):
                return detail["errorCode"]
        return error.get("status") or f"HTTP {response.status_code}"


class Notifier:
    """
    Notify an owner on every registered device.

    Example:
        ```python
        notifier = Notifier(store, {ProviderFamily.EXPO: ExpoPushProvider()})
        report = notifier.notify_owner("owner_1", "Hi", "Body", {"type": "test"})
        print(report.sent, report.pruned)
        ```
    """

    def __init__(
        self,
        store: GuardrailStore,
        providers: Optional[dict[ProviderFamily, NotificationProvider]] = None,
    ):
        self.store = store
        self.providers = dict(providers or {})

    def _provider_for(self, family: ProviderFamily) -> Optional[NotificationProvider]:
        provider = self.providers.get(family)
        if provider is None and family is ProviderFamily.APNS:
            provider = self.providers.get(ProviderFamily.FCM)
        return provider

    def notify_owner(
        self, owner_id: str, title: str, body: str, data: Optional[dict[str, Any]] = None
    ) -> NotificationReport:
        report = NotificationReport(owner_id=owner_id)
        tokens = self.store.list_push_tokens(owner_id)
        if not tokens:
            logger.info("No push tokens for owner=%s, skipping notification", owner_id)
            return report

        by_family: dict[ProviderFamily, list[str]] = {}
        for token in tokens:
            family = ProviderFamily(token.provider) if token.provider else detect_provider(token.token)
            by_family.setdefault(family, []).append(token.token)

        for family, family_tokens in by_family.items():
            provider = self._provider_for(family)
            if provider is None:
                logger.warning(
                    "No %s provider configured, %d tokens skipped for owner=%s",
                    family.value, len(family_tokens), owner_id,
                )
                report.results.extend(
                    DeliveryResult(token=t, success=False, error="no_provider") for t in family_tokens
                )
                continue
            report.results.extend(provider.send(family_tokens, title, body, data or {}))

        invalid = [r.token for r in report.results if r.invalid_token]
        if invalid:
            self.store.remove_push_tokens(owner_id, invalid)
            report.pruned = invalid
            logger.info("Pruned %d invalid push tokens for owner=%s", len(invalid), owner_id)

        logger.info(
            "Notified owner=%s: %d/%d delivered", owner_id, report.sent, len(report.results)
        )
        return report


def register_token(store: GuardrailStore, owner_id: str, token: str, platform: Optional[str] = None) -> PushToken:
    """Store a device token with its detected provider family."""
    push_token = PushToken(token=token, provider=detect_provider(token).value, platform=platform)
    store.add_push_token(owner_id, push_token)
    return push_token
