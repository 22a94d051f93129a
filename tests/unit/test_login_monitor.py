"""Tests for brute force login monitoring."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ehr_audit.chain.models import RecordQuery
from ehr_audit.context import RequestContext, reset_request_context, set_request_context
from ehr_audit.infra.redis import AttemptCounterStore, RedisClient
from ehr_audit.services.audit_logger import AuditLogger
from ehr_audit.services.login_monitor import LoginMonitor, attempt_key


class TestAttemptCounterStore:
    """Test Redis-backed counters and their fallback."""

    @pytest.fixture
    def mock_redis(self):
        """Create mock Redis client."""
        mock = AsyncMock()
        mock.incr = AsyncMock(return_value=1)
        mock.expire = AsyncMock(return_value=True)
        mock.get = AsyncMock(return_value=None)
        mock.delete = AsyncMock(return_value=1)
        return mock

    @pytest.mark.asyncio
    async def test_first_attempt_sets_window(self, mock_redis):
        """Test the window expiry is set on the first attempt only."""
        store = AttemptCounterStore(mock_redis, window_seconds=900)

        assert await store.increment("abc") == 1
        mock_redis.incr.assert_called_once_with("ehr_audit:v1:attempts:abc")
        mock_redis.expire.assert_called_once_with("ehr_audit:v1:attempts:abc", 900)

        mock_redis.incr.return_value = 2
        assert await store.increment("abc") == 2
        mock_redis.expire.assert_called_once()

    @pytest.mark.asyncio
    async def test_get_count(self, mock_redis):
        store = AttemptCounterStore(mock_redis, window_seconds=900)
        mock_redis.get.return_value = "3"

        assert await store.get_count("abc") == 3

    @pytest.mark.asyncio
    async def test_reset(self, mock_redis):
        store = AttemptCounterStore(mock_redis, window_seconds=900)

        assert await store.reset("abc") is True
        mock_redis.delete.assert_called_once_with("ehr_audit:v1:attempts:abc")

    @pytest.mark.asyncio
    async def test_fallback_without_redis(self):
        """Test counting continues in process memory when Redis is unavailable."""
        store = AttemptCounterStore(None, window_seconds=900)

        assert await store.increment("abc") == 1
        assert await store.increment("abc") == 2
        assert await store.get_count("abc") == 2
        assert await store.reset("abc") is False
        assert await store.get_count("abc") == 0

    @pytest.mark.asyncio
    async def test_fallback_on_redis_error(self, mock_redis):
        mock_redis.incr.side_effect = RedisConnectionError("down")
        store = AttemptCounterStore(mock_redis, window_seconds=900)

        assert await store.increment("abc") == 1
        assert await store.increment("abc") == 2

    @pytest.mark.asyncio
    async def test_local_window_expires(self, monkeypatch):
        store = AttemptCounterStore(None, window_seconds=60)
        clock = [1000.0]
        monkeypatch.setattr("ehr_audit.infra.redis.time", SimpleNamespace(monotonic=lambda: clock[0]))

        await store.increment("abc")
        await store.increment("abc")
        clock[0] += 61

        assert await store.get_count("abc") == 0
        assert await store.increment("abc") == 1


class TestLoginMonitor:
    """Test brute force detection."""

    @pytest.fixture
    def audit(self, trail):
        return AuditLogger(trail, phi_hash_salt="test-salt")

    @pytest.fixture
    def monitor(self, audit):
        return LoginMonitor(audit, AttemptCounterStore(None, window_seconds=900), threshold=3)

    def test_attempt_key(self):
        """Test keys are hashed and normalize the username."""
        assert attempt_key("JDoe", "10.0.0.1") == attempt_key(" jdoe ", "10.0.0.1")
        assert attempt_key("jdoe", "10.0.0.1") != attempt_key("jdoe", "10.0.0.2")
        assert "jdoe" not in attempt_key("jdoe", "10.0.0.1")

    @pytest.mark.asyncio
    async def test_below_threshold(self, monitor, trail):
        result = await monitor.record_failed_login("jdoe", "bad password", ip_address="10.0.0.1")

        assert result.attempts == 1
        assert result.brute_force_detected is False
        assert result.logged.written is True
        assert result.alert is None
        assert trail.query("security") == []

    @pytest.mark.asyncio
    async def test_alert_at_threshold(self, monitor, trail):
        """Test the third failure raises a CRITICAL alert on the security channel."""
        for _ in range(2):
            await monitor.record_failed_login("jdoe", ip_address="10.0.0.1")

        result = await monitor.record_failed_login("jdoe", ip_address="10.0.0.1")

        assert result.brute_force_detected is True
        assert result.alert.written is True
        alert = trail.query("security")[0]
        assert alert.operation == "BRUTE_FORCE_ATTEMPT"
        assert alert.level == "CRITICAL"
        assert alert.details["attempts"] == 3
        assert alert.details["threshold"] == 3
        assert alert.details["ip"] == "10.0.0.1"
        assert "jdoe" not in trail.state.log_path("security").read_text(encoding="utf-8")
        assert len(trail.query("auth", RecordQuery(operation="LOGIN_FAILED"))) == 3

    @pytest.mark.asyncio
    async def test_ip_from_request_context(self, monitor, trail):
        token = set_request_context(RequestContext(ip_address="192.168.1.5"))
        try:
            for _ in range(3):
                result = await monitor.record_failed_login("jdoe")
        finally:
            reset_request_context(token)

        assert result.brute_force_detected is True
        assert trail.query("security")[0].details["ip"] == "192.168.1.5"

    @pytest.mark.asyncio
    async def test_separate_ips_counted_separately(self, monitor):
        await monitor.record_failed_login("jdoe", ip_address="10.0.0.1")
        await monitor.record_failed_login("jdoe", ip_address="10.0.0.1")
        result = await monitor.record_failed_login("jdoe", ip_address="10.0.0.2")

        assert result.attempts == 1
        assert await monitor.is_blocked("jdoe", "10.0.0.1") is False

    @pytest.mark.asyncio
    async def test_success_resets(self, monitor, trail):
        for _ in range(3):
            await monitor.record_failed_login("jdoe", ip_address="10.0.0.1")
        assert await monitor.is_blocked("jdoe", "10.0.0.1") is True

        logged = await monitor.record_successful_login("jdoe", user_id=5, ip_address="10.0.0.1")

        assert logged.written is True
        assert await monitor.failed_attempts("jdoe", "10.0.0.1") == 0
        assert trail.query("auth")[0].operation == "LOGIN_SUCCESS"

    @pytest.mark.asyncio
    async def test_uses_shared_counter(self, audit):
        """Test attempts come from the shared Redis counter."""
        redis = AsyncMock()
        redis.incr = AsyncMock(return_value=7)
        redis.expire = AsyncMock(return_value=True)
        monitor = LoginMonitor(audit, AttemptCounterStore(redis, window_seconds=900), threshold=5)

        result = await monitor.record_failed_login("jdoe", ip_address="10.0.0.1")

        assert result.attempts == 7
        assert result.brute_force_detected is True
        redis.incr.assert_called_once_with(f"ehr_audit:v1:attempts:{attempt_key('jdoe', '10.0.0.1')}")


class TestRedisClient:
    """Test the shared connection and its degradation."""

    @pytest.fixture(autouse=True)
    def clear_client(self):
        RedisClient._client = None
        yield
        RedisClient._client = None

    @pytest.mark.asyncio
    async def test_unreachable_returns_none(self):
        client = AsyncMock()
        client.ping.side_effect = RedisConnectionError("refused")

        with patch("ehr_audit.infra.redis.redis.from_url", return_value=client):
            assert await RedisClient.get_client() is None

        client.aclose.assert_awaited_once()
        assert RedisClient._client is None

    @pytest.mark.asyncio
    async def test_client_reused_then_closed(self):
        client = AsyncMock()

        with patch("ehr_audit.infra.redis.redis.from_url", return_value=client) as from_url:
            assert await RedisClient.get_client() is client
            assert await RedisClient.get_client() is client

        from_url.assert_called_once()
        await RedisClient.close()
        client.aclose.assert_awaited_once()
        assert RedisClient._client is None
