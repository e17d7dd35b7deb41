"""Tests for push notification delivery."""

import json
from unittest.mock import Mock

import httpx

from replyguard.models import PushToken
from replyguard.notifications import (
    EXPO_PUSH_URL,
    DeliveryResult,
    ExpoPushProvider,
    FCMPushProvider,
    Notifier,
    ProviderFamily,
    detect_provider,
    register_token,
)
from replyguard.storage import InMemoryGuardrailStore

EXPO_TOKEN = "ExponentPushToken[abc123]"
APNS_TOKEN = "a" * 64
FCM_TOKEN = "dGVzdC10b2tlbjpBUEE5MWJH"


def client_for(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestDetectProvider:
    """Test token family detection."""

    def test_families(self):
        """Expo, APNs hex and everything else as FCM."""
        assert detect_provider(EXPO_TOKEN) is ProviderFamily.EXPO
        assert detect_provider(APNS_TOKEN) is ProviderFamily.APNS
        assert detect_provider(FCM_TOKEN) is ProviderFamily.FCM
        assert detect_provider("") is ProviderFamily.FCM

    def test_register_token(self):
        """Registered tokens remember their family."""
        store = InMemoryGuardrailStore()
        token = register_token(store, "owner_1", EXPO_TOKEN, platform="ios")
        assert token.provider == "expo"
        assert store.list_push_tokens("owner_1")[0].platform == "ios"


class TestExpoPushProvider:
    """Test the Expo provider against a mock transport."""

    def test_tickets_map_to_results(self):
        """Each ticket maps to its token; DeviceNotRegistered marks it invalid."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"data": [
                {"status": "ok", "id": "t1"},
                {"status": "error", "message": "not registered", "details": {"error": "DeviceNotRegistered"}},
            ]})

        provider = ExpoPushProvider(access_token="secret", client=client_for(handler))
        results = provider.send(["ExponentPushToken[a]", "ExponentPushToken[b]"], "Title", "Body", {"k": 1})

        assert [r.success for r in results] == [True, False]
        assert results[1].invalid_token is True
        assert results[1].error == "DeviceNotRegistered"

        request = requests[0]
        assert str(request.url) == EXPO_PUSH_URL
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body[0]["to"] == "ExponentPushToken[a]"
        assert body[0]["data"] == {"k": 1}

    def test_batches_of_one_hundred(self):
        """Large token lists are split into batches."""
        sizes = []

        def handler(request):
            batch = json.loads(request.content)
            sizes.append(len(batch))
            return httpx.Response(200, json={"data": [{"status": "ok"}] * len(batch)})

        provider = ExpoPushProvider(client=client_for(handler))
        tokens = [f"ExponentPushToken[{i}]" for i in range(150)]
        results = provider.send(tokens, "T", "B", {})

        assert sizes == [100, 50]
        assert all(r.success for r in results)

    def test_transport_error_fails_batch(self):
        """A network failure marks every token failed but not invalid."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        results = ExpoPushProvider(client=client_for(handler)).send([EXPO_TOKEN], "T", "B", {})
        assert results[0].success is False
        assert results[0].invalid_token is False


class TestFCMPushProvider:
    """Test the FCM v1 provider against a mock transport."""

    def test_unregistered_token(self):
        """UNREGISTERED responses mark the token invalid."""
        requests = []

        def handler(request):
            requests.append(request)
            message = json.loads(request.content)["message"]
            if message["token"] == "dead":
                return httpx.Response(404, json={"error": {
                    "status": "NOT_FOUND",
                    "details": [{"@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
                                 "errorCode": "UNREGISTERED"}],
                }})
            return httpx.Response(200, json={"name": "projects/p/messages/1"})

        provider = FCMPushProvider("my-project", "oauth-token", client=client_for(handler))
        results = provider.send(["live", "dead"], "T", "B", {"percent": 80})

        assert [r.success for r in results] == [True, False]
        assert results[1].error == "UNREGISTERED"
        assert results[1].invalid_token is True
        assert str(requests[0].url) == "https://fcm.googleapis.com/v1/projects/my-project/messages:send"
        assert requests[0].headers["Authorization"] == "Bearer oauth-token"
        assert json.loads(requests[0].content)["message"]["data"] == {"percent": "80"}

    def test_server_error_is_not_invalid(self):
        """Transient errors leave the token registered."""
        def handler(request):
            return httpx.Response(503, json={"error": {"status": "UNAVAILABLE"}})

        results = FCMPushProvider("p", "t", client=client_for(handler)).send(["tok"], "T", "B", {})
        assert results[0].error == "UNAVAILABLE"
        assert results[0].invalid_token is False


class TestNotifier:
    """Test fan-out across provider families."""

    def setup_method(self):
        self.store = InMemoryGuardrailStore()
        self.expo = Mock()
        self.fcm = Mock()
        self.notifier = Notifier(self.store, {ProviderFamily.EXPO: self.expo, ProviderFamily.FCM: self.fcm})

    def test_groups_by_family_and_prunes(self):
        """Tokens go to their provider and invalid ones are removed."""
        register_token(self.store, "owner_1", EXPO_TOKEN)
        register_token(self.store, "owner_1", FCM_TOKEN)
        self.expo.send.return_value = [
            DeliveryResult(token=EXPO_TOKEN, success=False, error="DeviceNotRegistered", invalid_token=True)
        ]
        self.fcm.send.return_value = [DeliveryResult(token=FCM_TOKEN, success=True)]

        report = self.notifier.notify_owner("owner_1", "Title", "Body", {"type": "test"})

        self.expo.send.assert_called_once_with([EXPO_TOKEN], "Title", "Body", {"type": "test"})
        self.fcm.send.assert_called_once_with([FCM_TOKEN], "Title", "Body", {"type": "test"})
        assert report.sent == 1
        assert report.failed == 1
        assert report.pruned == [EXPO_TOKEN]
        assert [t.token for t in self.store.list_push_tokens("owner_1")] == [FCM_TOKEN]

    def test_apns_routes_through_fcm(self):
        """APNs tokens use the FCM provider when no APNs provider exists."""
        register_token(self.store, "owner_1", APNS_TOKEN)
        self.fcm.send.return_value = [DeliveryResult(token=APNS_TOKEN, success=True)]

        report = self.notifier.notify_owner("owner_1", "T", "B")
        self.fcm.send.assert_called_once_with([APNS_TOKEN], "T", "B", {})
        assert report.sent == 1

    def test_missing_provider(self):
        """Tokens without a provider are reported, not dropped silently."""
        notifier = Notifier(self.store, {})
        self.store.add_push_token("owner_1", PushToken(token=EXPO_TOKEN, provider="expo"))

        report = notifier.notify_owner("owner_1", "T", "B")
        assert report.failed == 1
        assert report.results[0].error == "no_provider"
        assert report.pruned == []

    def test_no_tokens(self):
        """Owners without devices get an empty report."""
        report = self.notifier.notify_owner("owner_1", "T", "B")
        assert report.results == []
        self.expo.send.assert_not_called()
