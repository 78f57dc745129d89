"""Tests for interactive authorization flows."""

import base64
import hashlib
import threading
import time
from datetime import timedelta
from unittest import mock

import pytest
import requests

from authkeeper.callback_server import LoopbackCallbackServer
from authkeeper.exceptions import ErrorKind, FlowCancelled, FlowError, ProviderFailure
from authkeeper.flow import AuthorizationFlowCoordinator, generate_pkce_pair
from authkeeper.records import FlowKind

from conftest import T0


@pytest.fixture
def waiter(clock):
    """Waiter that advances the fake clock instead of sleeping."""
    waits = []

    def wait(event, seconds):
        waits.append(seconds)
        clock.advance(seconds)
        return event.is_set()

    wait.waits = waits
    return wait


@pytest.fixture
def messages():
    return []


@pytest.fixture
def opener():
    return mock.Mock(return_value=True)


@pytest.fixture
def flows(config, provider, clock, waiter, messages, opener):
    coordinator = AuthorizationFlowCoordinator(
        config,
        provider,
        clock=clock,
        waiter=waiter,
        notify=messages.append,
        browser_opener=opener,
    )
    yield coordinator
    coordinator.shutdown()


class TestPkce:
    """Tests for PKCE generation."""

    def test_challenge_is_s256_of_verifier(self):
        """The challenge is base64url(SHA256(verifier)) without padding."""
        verifier, challenge = generate_pkce_pair()

        digest = hashlib.sha256(verifier.encode()).digest()
        assert challenge == base64.urlsafe_b64encode(digest).decode().rstrip("=")
        assert 43 <= len(verifier) <= 128
        assert "=" not in challenge

    def test_pairs_are_unique(self):
        """Each grant gets a fresh verifier."""
        assert generate_pkce_pair()[0] != generate_pkce_pair()[0]


class TestFlowSelection:
    """Tests for choosing a flow variant."""

    def test_no_browser_prefers_device_flow(self, flows):
        """Without a browser the device flow is used."""
        grant = flows.begin_grant(["files.read"])

        assert grant.flow_kind is FlowKind.DEVICE_CODE
        assert grant.user_code == "ABCD-EFGH"
        assert grant.expires_at == T0 + timedelta(seconds=900)

    def test_no_browser_no_device_endpoint_uses_local(self, flows, provider):
        """Without either, the local flow prints the URL for manual use."""
        provider.supports_device_flow = False

        grant = flows.begin_grant(["files.read"])

        assert grant.flow_kind is FlowKind.LOCAL_CALLBACK
        assert grant.redirect_uri.startswith("http://127.0.0.1:")

    def test_preferred_flow_overrides(self, flows, config):
        """A configured preferred flow wins over auto selection."""
        config.preferred_flow = "local_callback"

        grant = flows.begin_grant(["files.read"])

        assert grant.flow_kind is FlowKind.LOCAL_CALLBACK

    @mock.patch("webbrowser.get")
    def test_browser_available_uses_local(self, mock_get, flows, config):
        """With a usable browser the local callback flow is chosen."""
        config.open_browser = True
        with mock.patch.dict(
            "os.environ", {"AUTHKEEPER_NO_BROWSER": "", "SSH_CONNECTION": ""}
        ):
            grant = flows.begin_grant(["files.read"])

        assert grant.flow_kind is FlowKind.LOCAL_CALLBACK

    @mock.patch("webbrowser.get")
    def test_no_browser_env_var(self, mock_get, flows, config):
        """AUTHKEEPER_NO_BROWSER disables the local flow."""
        config.open_browser = True
        with mock.patch.dict("os.environ", {"AUTHKEEPER_NO_BROWSER": "1"}):
            grant = flows.begin_grant(["files.read"])

        assert grant.flow_kind is FlowKind.DEVICE_CODE

    def test_bind_failure_falls_back_to_device(self, flows):
        """If the loopback listener cannot bind, device flow is used."""
        with mock.patch.object(flows, "_browser_available", return_value=True), \
                mock.patch.object(LoopbackCallbackServer, "start", side_effect=OSError("in use")):
            grant = flows.begin_grant(["files.read"])

        assert grant.flow_kind is FlowKind.DEVICE_CODE

    def test_bind_failure_with_forced_local_flow(self, flows):
        """A forced local flow that cannot bind is a configuration error."""
        with mock.patch.object(LoopbackCallbackServer, "start", side_effect=OSError("in use")):
            with pytest.raises(FlowError) as exc_info:
                flows.begin_grant(["files.read"], flow_kind=FlowKind.LOCAL_CALLBACK)

        assert exc_info.value.kind is ErrorKind.MISCONFIGURED

    def test_one_active_grant_per_scope_set(self, flows):
        """A second begin for the same scopes returns the active grant."""
        first = flows.begin_grant(["files.read"])
        second = flows.begin_grant("files.read")
        other = flows.begin_grant(["mail.send"])

        assert second is first
        assert other is not first
        assert len(flows.active_grants()) == 2


class TestLocalCallbackFlow:
    """Tests for the local callback flow."""

    @pytest.fixture
    def grant(self, flows):
        return flows.begin_grant(["files.read"], flow_kind=FlowKind.LOCAL_CALLBACK)

    def test_successful_callback(self, flows, provider, grant):
        """A valid callback is exchanged for a credential record."""
        outcome = flows.handle_callback(
            {"code": "auth_code_123", "state": grant.correlation_state}, grant.correlation_state
        )

        record = flows.await_completion(grant)

        assert outcome.success is True
        assert provider.exchanged == ["auth_code_123"]
        assert record.subject_id == "default"
        assert record.access_secret == "access-1"
        assert record.granted_scopes == frozenset({"files.read"})
        assert record.provider_hints["token_url"] == "https://auth.example.com/token"
        assert flows.active_grants() == []

    def test_callback_over_http(self, flows, provider, grant):
        """The loopback listener delivers the redirect to the grant."""
        response = requests.get(
            grant.redirect_uri,
            params={"code": "http_code", "state": grant.correlation_state},
            timeout=5,
        )

        record = flows.await_completion(grant)

        assert response.status_code == 200
        assert provider.exchanged == ["http_code"]
        assert record.access_secret == "access-1"

    def test_forged_callback(self, flows, provider, grant):
        """A mismatched state aborts the grant without a token exchange."""
        outcome = flows.handle_callback(
            {"code": "attacker_code", "state": "forged-state"}, grant.correlation_state
        )

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert outcome.success is False
        assert exc_info.value.kind is ErrorKind.FORGERY_SUSPECTED
        assert provider.exchanged == []

    def test_missing_state_is_forgery(self, flows, provider, grant):
        """A callback without state is treated as forged."""
        flows.handle_callback({"code": "c"}, grant.correlation_state)

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.FORGERY_SUSPECTED

    def test_state_is_single_use(self, flows, grant):
        """A replayed callback is not accepted."""
        params = {"code": "c", "state": grant.correlation_state}
        flows.handle_callback(params, grant.correlation_state)

        replay = flows.handle_callback(params, grant.correlation_state)

        assert replay.success is False

    def test_user_denied(self, flows, provider, grant):
        """error=access_denied ends the grant as denied."""
        outcome = flows.handle_callback(
            {"error": "access_denied", "state": grant.correlation_state}, grant.correlation_state
        )

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert outcome.success is False
        assert "access_denied" not in outcome.message
        assert exc_info.value.kind is ErrorKind.DENIED
        assert provider.exchanged == []

    def test_missing_code(self, flows, grant):
        """A callback without a code is a misconfiguration."""
        flows.handle_callback({"state": grant.correlation_state}, grant.correlation_state)

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.MISCONFIGURED

    def test_flow_timeout(self, flows, clock, grant):
        """No callback before the grant expires yields flow_expired."""
        clock.advance(899.9)

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.FLOW_EXPIRED
        assert flows.active_grants() == []

    def test_exchange_retries_transient_failures(self, flows, provider, waiter, grant):
        """Transport failures during the exchange are retried with backoff."""
        provider.exchange_failures = [requests.ConnectionError("reset")]
        flows.handle_callback({"code": "c", "state": grant.correlation_state}, grant.correlation_state)

        record = flows.await_completion(grant)

        assert record.access_secret == "access-1"
        assert waiter.waits == [1.0]

    def test_exchange_retry_budget(self, flows, provider, grant):
        """Transport failures beyond the budget are terminal."""
        provider.exchange_failures = [requests.ConnectionError("reset")] * 4
        flows.handle_callback({"code": "c", "state": grant.correlation_state}, grant.correlation_state)

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.TRANSIENT_NETWORK

    def test_rejected_code(self, flows, provider, grant):
        """invalid_grant on exchange is denied and not retried."""
        provider.exchange_failures = [ProviderFailure(400, "invalid_grant")]
        flows.handle_callback({"code": "c", "state": grant.correlation_state}, grant.correlation_state)

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.DENIED
        assert provider.exchange_failures == []

    def test_cancel(self, flows, provider, grant):
        """Cancelling discards the grant and stops the listener."""
        flows.cancel(grant)

        with pytest.raises(FlowCancelled):
            flows.await_completion(grant)

        assert flows.active_grants() == []
        assert provider.exchanged == []
        with pytest.raises(requests.ConnectionError):
            requests.get(grant.redirect_uri, timeout=2)

    def test_await_after_completion(self, flows, grant):
        """A finished grant cannot be awaited again."""
        flows.handle_callback({"code": "c", "state": grant.correlation_state}, grant.correlation_state)
        flows.await_completion(grant)

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.FLOW_EXPIRED

    def test_concurrent_awaiters_share_outcome(self, flows, grant):
        """Every caller waiting on one grant gets the same record."""
        results = []
        threads = [
            threading.Thread(target=lambda: results.append(flows.await_completion(grant)))
            for _ in range(2)
        ]
        for thread in threads:
            thread.start()
        time.sleep(0.2)

        flows.handle_callback({"code": "c", "state": grant.correlation_state}, grant.correlation_state)
        for thread in threads:
            thread.join(timeout=5)

        assert len(results) == 2
        assert results[0] is results[1]

    def test_present_opens_browser(self, flows, config, opener, messages, grant):
        """present() opens the authorization URL when allowed."""
        config.open_browser = True

        flows.present(grant)

        opener.assert_called_once_with(grant.authorization_url)
        assert any(grant.authorization_url in m for m in messages)

    def test_present_without_browser(self, flows, opener, messages, grant):
        """present() only prints the URL when browsers are disabled."""
        flows.present(grant)

        opener.assert_not_called()
        assert any(grant.authorization_url in m for m in messages)


class TestDeviceCodeFlow:
    """Tests for the device-code flow."""

    @pytest.fixture
    def grant(self, flows):
        return flows.begin_grant(["files.read"], flow_kind=FlowKind.DEVICE_CODE)

    def test_present_shows_user_code(self, flows, messages, grant):
        """Instructions include the verification URL and user code."""
        flows.present(grant)

        text = "\n".join(messages)
        assert "https://auth.example.com/device" in text
        assert "ABCD-EFGH" in text

    def test_polls_until_authorized(self, flows, provider, waiter, grant):
        """Pending responses wait the interval; slow_down adds five seconds."""
        provider.device_responses = [
            ProviderFailure(400, "authorization_pending"),
            ProviderFailure(400, "slow_down"),
            provider.issue(),
        ]

        record = flows.await_completion(grant)

        assert record.access_secret == "access-1"
        assert waiter.waits == [5, 10]
        assert provider.polls == 3

    def test_device_flow_expiry(self, flows, provider, clock, grant):
        """No completion before the deadline yields flow_expired."""
        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.FLOW_EXPIRED
        assert clock() == T0 + timedelta(seconds=900)
        assert provider.polls == 180
        assert flows.active_grants() == []

    def test_access_denied(self, flows, provider, grant):
        """The user declining ends the flow as denied."""
        provider.device_responses = [ProviderFailure(400, "access_denied")]

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.DENIED

    def test_expired_token(self, flows, provider, grant):
        """expired_token from the provider yields flow_expired."""
        provider.device_responses = [ProviderFailure(400, "expired_token")]

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.FLOW_EXPIRED

    def test_transient_poll_failures_are_retried(self, flows, provider, grant):
        """Transport errors while polling are retried."""
        provider.device_responses = [
            requests.ConnectionError("reset"),
            requests.Timeout("slow"),
            provider.issue(),
        ]

        record = flows.await_completion(grant)

        assert record.access_secret == "access-1"

    def test_poll_failure_budget(self, flows, provider, grant):
        """Too many consecutive transport errors end the flow."""
        provider.device_responses = [requests.ConnectionError("reset")] * 4

        with pytest.raises(FlowError) as exc_info:
            flows.await_completion(grant)

        assert exc_info.value.kind is ErrorKind.TRANSIENT_NETWORK

    def test_cancel_interrupts_polling(self, config, provider, clock, messages):
        """Cancelling during polling stops the loop immediately."""
        holder = {}

        def wait(event, seconds):
            holder["flows"].cancel(holder["grant"])
            return event.is_set()

        flows = AuthorizationFlowCoordinator(
            config, provider, clock=clock, waiter=wait, notify=messages.append
        )
        holder["flows"] = flows
        holder["grant"] = flows.begin_grant(["files.read"], flow_kind=FlowKind.DEVICE_CODE)

        with pytest.raises(FlowCancelled):
            flows.await_completion(holder["grant"])

        assert provider.polls == 1
        assert flows.active_grants() == []

    def test_run_grant(self, flows, provider, messages):
        """run_grant begins, presents and completes a grant."""
        provider.device_responses = [provider.issue()]

        record = flows.run_grant(["files.read"], flow_kind=FlowKind.DEVICE_CODE)

        assert record.access_secret == "access-1"
        assert any("ABCD-EFGH" in m for m in messages)
