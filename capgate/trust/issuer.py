"""
Capability Issuer

Mints, validates and revokes time-boxed, scope-limited grants for a
(subject, resource, task) triple. A grant is the only thing a subject ever
holds; backend credentials never leave the gateway.

INVARIANTS:
    - One live grant per key; re-issuing for a key replaces the old grant
    - allowed_operations == operations_for_scopes(scopes), exactly
    - expires_at > created_at
    - validate() never raises and never says why it refused
    - Grants are removed, never edited

Expiry is lazy: validate() revokes a grant it finds expired, and an optional
single sweeper task removes expired grants nobody touches.
"""

import asyncio
import hmac
import inspect
import logging
import secrets
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Collection, Dict, FrozenSet, List, Optional

from capgate.errors import ValidationError
from capgate.utils.logging_setup import redact

from .grant_store import GrantKey, GrantStore, InMemoryGrantStore
from .scopes import KNOWN_SCOPES, normalize_scope, operations_for_scopes

logger = logging.getLogger(__name__)

MIN_DURATION_MINUTES = 1
MAX_DURATION_MINUTES = 240  # 4 hours

# 32 bytes of entropy, hex encoded
SECRET_BYTES = 32

RevokeHook = Callable[["Grant"], Any]


@dataclass(frozen=True)
class Grant:
    """A time-boxed capability bundle."""

    subject_id: str
    resource_id: str
    task_id: str
    session_secret: str = field(repr=False)
    scopes: FrozenSet[str]
    allowed_operations: FrozenSet[str]
    created_at: datetime
    expires_at: datetime

    @property
    def key(self) -> GrantKey:
        return GrantKey(self.subject_id, self.resource_id, self.task_id)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = {
            "subject_id": self.subject_id,
            "resource_id": self.resource_id,
            "task_id": self.task_id,
            "scopes": sorted(self.scopes),
            "allowed_operations": sorted(self.allowed_operations),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }
        if include_secret:
            data["session_secret"] = self.session_secret
        return data


class CapabilityIssuer:
    """
    Issues and checks grants.

    The grant table is an injected GrantStore so that each test (or each
    deployment of the service) gets an isolated instance.
    """

    def __init__(
        self,
        store: Optional[GrantStore] = None,
        clock: Callable[[], datetime] = datetime.now,
        sweep_interval_seconds: float = 60.0,
    ):
        self._store = store if store is not None else InMemoryGrantStore()
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._revoke_hooks: List[RevokeHook] = []
        self._sweeper: Optional[asyncio.Task] = None

    # =========================================================================
    # Issuance
    # =========================================================================

    async def create_grant(
        self,
        subject_id: str,
        resource_id: str,
        task_id: str,
        scopes: Collection,
        duration_minutes: int,
    ) -> Grant:
        """
        Mint a grant for (subject, resource, task).

        Raises:
            ValidationError: empty identifier, empty/unknown scopes, or a
                duration outside [1, 240] minutes. Nothing is stored.
        """
        requested = self._validate_request(subject_id, resource_id, task_id, scopes, duration_minutes)

        now = self._clock()
        grant = Grant(
            subject_id=subject_id,
            resource_id=resource_id,
            task_id=task_id,
            session_secret=self._new_secret(),
            scopes=requested,
            allowed_operations=operations_for_scopes(requested),
            created_at=now,
            expires_at=now + timedelta(minutes=duration_minutes),
        )

        replaced = self._store.put(grant)
        if replaced is not None:
            logger.info(f"Replaced existing grant for {grant.key}")

        logger.info(
            "Created grant %s scopes=%s expires_at=%s",
            grant.key,
            sorted(requested),
            grant.expires_at.isoformat(),
        )
        return grant

    def _validate_request(
        self,
        subject_id: str,
        resource_id: str,
        task_id: str,
        scopes: Collection,
        duration_minutes: int,
    ) -> FrozenSet[str]:
        if not subject_id or not resource_id or not task_id:
            raise ValidationError("Missing required identifiers")

        if isinstance(scopes, (str, bytes)) or scopes is None:
            raise ValidationError("Scopes must be a collection of scope names")

        requested = frozenset(normalize_scope(s) for s in scopes)
        if not requested:
            raise ValidationError("No scopes requested")

        unknown = sorted(str(s) for s in requested if s not in KNOWN_SCOPES)
        if unknown:
            raise ValidationError(f"Invalid scope: {', '.join(unknown)}")

        if (
            isinstance(duration_minutes, bool)
            or not isinstance(duration_minutes, int)
            or not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES
        ):
            raise ValidationError(
                f"Invalid duration ({MIN_DURATION_MINUTES}-{MAX_DURATION_MINUTES} minutes)"
            )

        return requested

    def _new_secret(self) -> str:
        secret = secrets.token_hex(SECRET_BYTES)
        while self._store.secret_in_use(secret):
            secret = secrets.token_hex(SECRET_BYTES)
        return secret

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate(
        self,
        subject_id: str,
        resource_id: str,
        task_id: str,
        session_secret: str,
    ) -> bool:
        """
        Check a presented secret against the live grant for the key.

        Fail-closed: any missing grant, mismatch, expiry or internal error
        yields False. Expired grants are revoked as a side effect.
        """
        try:
            key = GrantKey(subject_id, resource_id, task_id)
            grant = self._store.get(key)

            if grant is None:
                logger.debug(f"No grant for {key}")
                return False

            if not isinstance(session_secret, str) or not hmac.compare_digest(
                grant.session_secret.encode(), session_secret.encode()
            ):
                logger.debug(f"Secret mismatch for {key} (presented {redact(session_secret or '')})")
                return False

            if grant.is_expired(self._clock()):
                logger.debug(f"Grant expired for {key}")
                await self.revoke(subject_id, resource_id, task_id)
                return False

            return True

        except Exception as e:
            logger.error(f"Grant validation error: {e}")
            return False

    def allowed_operations(self, subject_id: str, resource_id: str, task_id: str) -> FrozenSet[str]:
        """Operations the live grant permits; empty if there is none."""
        grant = self._store.get(GrantKey(subject_id, resource_id, task_id))
        if grant is None or grant.is_expired(self._clock()):
            return frozenset()
        return grant.allowed_operations

    def get_grant(self, subject_id: str, resource_id: str, task_id: str) -> Optional[Grant]:
        """Live grant for the key, if any (expired grants are not returned)."""
        grant = self._store.get(GrantKey(subject_id, resource_id, task_id))
        if grant is None or grant.is_expired(self._clock()):
            return None
        return grant

    # =========================================================================
    # Revocation
    # =========================================================================

    def register_revoke_hook(self, hook: RevokeHook) -> None:
        """Register a callback (sync or async) run for every revoked grant."""
        self._revoke_hooks.append(hook)

    async def revoke(self, subject_id: str, resource_id: str, task_id: str) -> bool:
        """
        Remove the grant for the key. Idempotent.

        Returns True if a grant was removed.
        """
        grant = self._store.delete(GrantKey(subject_id, resource_id, task_id))
        if grant is None:
            return False

        logger.info(f"Revoked grant {grant.key}")
        await self._run_revoke_hooks(grant)
        return True

    async def _run_revoke_hooks(self, grant: Grant) -> None:
        for hook in self._revoke_hooks:
            try:
                result = hook(grant)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Revoke hook failed for {grant.key}: {e}")

    async def sweep_expired(self) -> int:
        """Revoke every expired grant. Returns how many were removed."""
        now = self._clock()
        expired = [g for g in self._store.list_grants() if g.is_expired(now)]
        for grant in expired:
            await self.revoke(grant.subject_id, grant.resource_id, grant.task_id)
        if expired:
            logger.info(f"Swept {len(expired)} expired grant(s)")
        return len(expired)

    def start_sweeper(self) -> asyncio.Task:
        """Start the periodic expiry sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error(f"Grant sweep failed: {e}")

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Counts for monitoring; never includes secrets."""
        now = self._clock()
        soon = now + timedelta(minutes=5)
        grants = self._store.list_grants()
        return {
            "active_grants": len(grants),
            "grants_by_subject": dict(Counter(g.subject_id for g in grants)),
            "upcoming_expirations": sum(1 for g in grants if g.expires_at <= soon),
        }
