"""
Remote policy sync — background lifecycle of the organisation policy bundle.

State machine::

    idle ──sync()──▶ syncing ──▶ success ─┐
                         │                 ├──(next tick scheduled)──▶ idle
                         └─────▶ error ────┘

The held bundle is an immutable snapshot swapped atomically on a fully
successful fetch. A failed fetch (transport error, HTTP error, schema
violation) records the error and leaves the previous bundle in force, so
an unreachable policy server freezes the last-known policy rather than
disabling it.

Usage::

    manager = PolicySyncManager(url="https://policy.example.com/bundle", vault=KeyringVault())
    await manager.start()          # background timer
    bundle = await manager.sync()  # immediate fetch (coalesced if one is in flight)
    engine = PolicyEngine(policy_source=manager)
    ...
    await manager.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from agentgate.core.config import AgentGateConfig, check_policy_url
from agentgate.core.constants import (
    DEFAULT_REFRESH_INTERVAL_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEV_OVERRIDE_TOKEN_KEY,
    MIN_REFRESH_INTERVAL_SECONDS,
    POLICY_AUTH_TOKEN_KEY,
    RETRY_BACKOFF_BASE_SECONDS,
)
from agentgate.core.exceptions import BundleValidationError, PolicySyncError, VaultError
from agentgate.core.policy.model import RemotePolicyBundle, parse_bundle
from agentgate.core.vault import VaultService

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Snapshot / state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicySnapshot:
    """What the engine reads on every evaluation. Replaced, never mutated."""

    bundle: RemotePolicyBundle | None = None
    dev_override: bool = False


class PolicySource(Protocol):
    def snapshot(self) -> PolicySnapshot: ...


class StaticPolicySource:
    """A fixed bundle (CLI ``--bundle`` files, tests, air-gapped deployments)."""

    def __init__(self, bundle: RemotePolicyBundle | None) -> None:
        self._snapshot = PolicySnapshot(bundle=bundle)

    def snapshot(self) -> PolicySnapshot:
        return self._snapshot


class SyncStatus(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class SyncState:
    status: SyncStatus = SyncStatus.IDLE
    last_sync_time: datetime | None = None
    last_error: str | None = None
    next_sync_time: datetime | None = None
    policy_version: int | None = None
    is_expired: bool = False
    consecutive_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "last_sync_time": _iso(self.last_sync_time),
            "last_error": self.last_error,
            "next_sync_time": _iso(self.next_sync_time),
            "policy_version": self.policy_version,
            "is_expired": self.is_expired,
            "consecutive_failures": self.consecutive_failures,
        }


@dataclass(frozen=True)
class PolicyStatus:
    """Read-only status for operator-facing surfaces."""

    configured_url: str | None
    has_remote_policy: bool
    version: int | None
    fetched_at: datetime | None
    expires_at: datetime | None
    is_expired: bool
    allowlist_count: int
    blocklist_count: int
    tool_restrictions_count: int
    time_based_rules_count: int
    developer_override_enabled: bool
    message: str | None
    sync: SyncState

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["fetched_at"] = _iso(self.fetched_at)
        data["expires_at"] = _iso(self.expires_at)
        data["sync"] = self.sync.to_dict()
        return data


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class PolicySyncManager:
    """
    Owns the remote policy bundle and keeps it fresh.

    Thread-safety: ``snapshot()``, ``sync_state()`` and ``status()`` may be
    called from any thread; they hold the lock only long enough to copy a
    reference. ``sync()``, ``start()`` and ``stop()`` must run on a single
    asyncio event loop.
    """

    def __init__(
        self,
        url: str = "",
        vault: VaultService | None = None,
        refresh_interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        dev_override_token: str | None = None,
        sync_on_start: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._url = url.strip()
        self._vault = vault
        self._default_interval = refresh_interval_seconds
        self._timeout = request_timeout_seconds
        self._dev_override_token = dev_override_token
        self._sync_on_start = sync_on_start
        self._transport = transport
        self._clock = clock

        self._lock = threading.Lock()
        self._snapshot = PolicySnapshot()
        self._state = SyncState()

        self._inflight: asyncio.Task[RemotePolicyBundle] | None = None
        self._timer_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls, config: AgentGateConfig, vault: VaultService | None = None
    ) -> PolicySyncManager:
        sync_cfg = config.policy_sync
        override = sync_cfg.dev_override_token
        return cls(
            url=sync_cfg.url,
            vault=vault,
            refresh_interval_seconds=sync_cfg.refresh_interval_seconds,
            request_timeout_seconds=sync_cfg.request_timeout_seconds,
            dev_override_token=override.get_secret_value() if override else None,
            sync_on_start=sync_cfg.sync_on_start,
        )

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    def snapshot(self) -> PolicySnapshot:
        with self._lock:
            return self._snapshot

    def sync_state(self) -> SyncState:
        with self._lock:
            state = self._state
            bundle = self._snapshot.bundle
        return dataclasses.replace(
            state, is_expired=bundle is not None and bundle.is_expired(self._clock())
        )

    def active_bundle(self, now: datetime | None = None) -> RemotePolicyBundle | None:
        """The bundle rule evaluators should consult, or None."""
        snap = self.snapshot()
        if snap.bundle is None or snap.dev_override:
            return None
        if snap.bundle.is_expired(now or self._clock()):
            return None
        return snap.bundle

    def admin_message(self) -> str | None:
        snap = self.snapshot()
        if snap.bundle is None or snap.bundle.is_expired(self._clock()):
            return None
        return snap.bundle.message

    def status(self) -> PolicyStatus:
        snap = self.snapshot()
        bundle = snap.bundle
        state = self.sync_state()
        return PolicyStatus(
            configured_url=self._url or None,
            has_remote_policy=bundle is not None,
            version=bundle.version if bundle else None,
            fetched_at=bundle.fetched_at if bundle else None,
            expires_at=bundle.expires_at if bundle else None,
            is_expired=state.is_expired,
            allowlist_count=len(bundle.domain_allowlist or ()) if bundle else 0,
            blocklist_count=len(bundle.domain_blocklist or ()) if bundle else 0,
            tool_restrictions_count=len(bundle.tool_restrictions or ()) if bundle else 0,
            time_based_rules_count=len(bundle.time_based_rules or ()) if bundle else 0,
            developer_override_enabled=snap.dev_override,
            message=bundle.message if bundle else None,
            sync=state,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, url: str, auth_token: str | None = None) -> None:
        """Set the sync target and, optionally, store its auth token in the vault."""
        url = check_policy_url(url)
        if auth_token:
            self.set_auth_token(auth_token)
        self._url = url
        logger.info("Remote policy configured: %s", url)

    def set_auth_token(self, token: str) -> None:
        if self._vault is None:
            raise VaultError("No vault configured; cannot store the policy auth token")
        self._vault.set_secret(POLICY_AUTH_TOKEN_KEY, token)

    def clear_auth_token(self) -> bool:
        if self._vault is None:
            return False
        return self._vault.delete_secret(POLICY_AUTH_TOKEN_KEY)

    def set_dev_override(self, enabled: bool, token: str | None = None) -> bool:
        """Toggle the remote-policy bypass. Enabling requires the override token.

        The flag is held in memory only and never survives a restart.
        Built-in dangerous-tool and observe-only rules are unaffected.
        """
        if enabled and not self._override_token_valid(token):
            logger.warning("Developer override rejected: invalid or unconfigured token")
            return False
        with self._lock:
            self._snapshot = dataclasses.replace(self._snapshot, dev_override=enabled)
        if enabled:
            logger.warning("Developer override ENABLED: remote policy is bypassed")
        else:
            logger.info("Developer override disabled")
        return True

    def _override_token_valid(self, token: str | None) -> bool:
        expected = self._dev_override_token
        if not expected and self._vault is not None:
            try:
                expected = self._vault.get_secret(DEV_OVERRIDE_TOKEN_KEY)
            except VaultError as exc:
                logger.error("Cannot read developer override token: %s", exc)
                return False
        if not expected or not token:
            return False
        return secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, url: str | None = None) -> RemotePolicyBundle:
        """
        Fetch the bundle now. Concurrent calls share the in-flight fetch.

        Raises:
            PolicySyncError: on transport/HTTP failure or missing URL.
            BundleValidationError: if the document violates the bundle schema.
        """
        if self._inflight is not None and not self._inflight.done():
            return await asyncio.shield(self._inflight)

        target = (url or self._url).strip()
        if not target:
            raise PolicySyncError("No policy URL configured")

        self._inflight = asyncio.get_running_loop().create_task(self._sync_once(target))
        return await asyncio.shield(self._inflight)

    async def _sync_once(self, url: str) -> RemotePolicyBundle:
        self._update_state(status=SyncStatus.SYNCING)
        try:
            bundle = await self._fetch(url)
        except asyncio.CancelledError:
            self._update_state(status=SyncStatus.IDLE)
            raise
        except PolicySyncError as exc:
            self._record_failure(url, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected error during policy sync from %s", url)
            error = PolicySyncError(f"Policy sync failed: {type(exc).__name__}: {exc}")
            self._record_failure(url, error)
            raise error from exc

        with self._lock:
            self._snapshot = dataclasses.replace(self._snapshot, bundle=bundle)
        self._update_state(
            status=SyncStatus.SUCCESS,
            last_sync_time=bundle.fetched_at,
            last_error=None,
            policy_version=bundle.version,
            consecutive_failures=0,
        )
        logger.info("Remote policy v%d loaded from %s", bundle.version, url)
        return bundle

    def _record_failure(self, url: str, exc: PolicySyncError) -> None:
        with self._lock:
            failures = self._state.consecutive_failures + 1
        self._update_state(
            status=SyncStatus.ERROR,
            last_error=str(exc),
            consecutive_failures=failures,
        )
        logger.warning("Policy sync from %s failed (%d in a row): %s", url, failures, exc)

    async def _fetch(self, url: str) -> RemotePolicyBundle:
        headers = {"Accept": "application/json"}
        token = self._resolve_auth_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        token = None

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(url, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PolicySyncError(
                f"Policy server returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise PolicySyncError(f"Policy fetch failed: {exc}") from exc
        except httpx.InvalidURL as exc:
            raise PolicySyncError(f"Invalid policy URL {url!r}: {exc}") from exc
        except ValueError as exc:
            # malformed URL parts or a non-ASCII auth header
            raise PolicySyncError(f"Cannot build policy request: {exc}") from exc
        finally:
            headers.pop("Authorization", None)

        try:
            data = response.json()
        except ValueError as exc:
            raise BundleValidationError("Policy server response is not valid JSON") from exc

        try:
            return parse_bundle(data, fetched_at=self._clock())
        except TypeError as exc:
            raise BundleValidationError(str(exc)) from exc
        except ValidationError as exc:
            problems = []
            for err in exc.errors():
                loc = ".".join(str(x) for x in err["loc"]) if err["loc"] else "(root)"
                problems.append(f"{loc}: {err['msg']}")
            raise BundleValidationError("Invalid policy bundle: " + "; ".join(problems)) from exc

    def _resolve_auth_token(self) -> str | None:
        if self._vault is None:
            return None
        try:
            return self._vault.get_secret(POLICY_AUTH_TOKEN_KEY)
        except VaultError as exc:
            raise PolicySyncError(f"Cannot resolve policy auth token: {exc}") from exc

    def _update_state(self, **changes: Any) -> None:
        with self._lock:
            self._state = dataclasses.replace(self._state, **changes)

    # ------------------------------------------------------------------
    # Background timer
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background sync loop (no-op if already running)."""
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._timer_task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="agentgate-policy-sync"
        )
        logger.debug("Policy sync loop started")

    async def stop(self) -> None:
        """Stop the loop and abandon any in-flight fetch. The held bundle is kept."""
        tasks = [t for t in (self._timer_task, self._inflight) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, PolicySyncError):
                await task
        self._timer_task = None
        self._inflight = None
        self._update_state(status=SyncStatus.IDLE, next_sync_time=None)
        logger.debug("Policy sync loop stopped")

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    async def _run_loop(self) -> None:
        if not self._sync_on_start:
            await self._wait_next_tick()
        while True:
            if self._url:
                try:
                    await self.sync()
                except PolicySyncError:
                    pass  # recorded in sync state; retried on the next tick
                except Exception:
                    logger.exception("Policy sync loop error; retrying on the next tick")
            await self._wait_next_tick()

    async def _wait_next_tick(self) -> None:
        delay = self.next_delay()
        self._update_state(
            status=SyncStatus.IDLE,
            next_sync_time=self._clock() + timedelta(seconds=delay),
        )
        await asyncio.sleep(delay)

    def next_delay(self) -> float:
        """Seconds until the next tick: the refresh interval, or backoff after failures."""
        with self._lock:
            bundle = self._snapshot.bundle
            failures = self._state.consecutive_failures

        interval = self._default_interval
        if bundle is not None and bundle.refresh_interval_ms is not None:
            interval = max(bundle.refresh_interval_ms / 1000.0, MIN_REFRESH_INTERVAL_SECONDS)

        if failures:
            return min(RETRY_BACKOFF_BASE_SECONDS * 2 ** (failures - 1), interval)
        return interval
