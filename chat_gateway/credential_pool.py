"""Credential pool with round-robin selection and failure cool-downs."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from chat_gateway.models import (
    DEGRADED_COOLDOWN_SECONDS,
    DEGRADED_THRESHOLD,
    DOWN_COOLDOWN_SECONDS,
    DOWN_THRESHOLD,
    Credential,
    PoolState,
)
from chat_gateway.tokens import needs_renewal

logger = logging.getLogger(__name__)


class TokenExchanger(Protocol):
    async def exchange_token(self, secret: str) -> str: ...


class CredentialPool:
    """Owns every upstream credential and all mutation of their health state.

    Selection, outcome reporting and token installation happen under one
    asyncio lock. Token exchanges run outside the lock; their results are
    applied afterwards.
    """

    def __init__(
        self,
        exchanger: TokenExchanger,
        clock: Callable[[], float] = time.time,
    ):
        self.pool: PoolState = PoolState()
        self._exchanger = exchanger
        self._clock = clock
        self._lock: asyncio.Lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self.pool.initialized

    async def initialize(self, secrets: Sequence[str]) -> None:
        if self.pool.initialized:
            return

        credentials = [
            Credential(id=f"credential_{index}", secret=secret)
            for index, secret in enumerate(secrets, start=1)
        ]
        if not credentials:
            logger.warning("No upstream secrets configured, credential pool is empty")

        outcomes = await asyncio.gather(
            *[self._exchange(credential) for credential in credentials]
        )

        async with self._lock:
            for credential, (token, error) in zip(credentials, outcomes):
                if token is not None:
                    credential.update_token(token)
                    logger.info("%s obtained a bearer token", credential.id)
                else:
                    credential.failure_count += 1
                    credential.last_error = error
                    logger.error(
                        "%s token exchange failed: %s", credential.id, error
                    )
            self.pool.credentials = credentials
            self.pool.initialized = True
            counts = self.pool.counts(self._clock())

        logger.info(
            "Credential pool initialized (total=%d, healthy=%d, degraded=%d, down=%d)",
            len(credentials),
            counts["healthy"],
            counts["degraded"],
            counts["down"],
        )

    async def select_available(
        self, exclude_id: Optional[str] = None
    ) -> Optional[Credential]:
        async with self._lock:
            now = self._clock()
            available = [c for c in self.pool.credentials if c.is_available(now)]
            available = _without(available, exclude_id)

            if available:
                selected = available[self.pool.cursor % len(available)]
                self.pool.cursor = (self.pool.cursor + 1) % len(available)
                return selected

            with_token = [c for c in self.pool.credentials if c.bearer_token]
            with_token = _without(with_token, exclude_id)
            if not with_token:
                return None

            logger.warning("No credential is available, using a degraded credential")
            return with_token[self.pool.cursor % len(with_token)]

    async def report_failure(
        self, credential: Credential, cause: object = None
    ) -> None:
        async with self._lock:
            now = self._clock()
            credential.failure_count += 1
            credential.last_error = str(cause) if cause is not None else None

            if credential.failure_count >= DOWN_THRESHOLD:
                credential.next_eligible_at = now + DOWN_COOLDOWN_SECONDS
            elif credential.failure_count >= DEGRADED_THRESHOLD:
                credential.next_eligible_at = now + DEGRADED_COOLDOWN_SECONDS

            logger.warning(
                "%s marked as failed (failures=%d, status=%s): %s",
                credential.id,
                credential.failure_count,
                credential.status_at(now),
                credential.last_error,
            )

    async def report_success(self, credential: Credential) -> None:
        async with self._lock:
            now = self._clock()
            credential.failure_count = max(0, credential.failure_count - 1)
            if credential.next_eligible_at is not None and credential.is_available(now):
                credential.next_eligible_at = None
                logger.info("%s recovered to healthy", credential.id)
            credential.last_used_at = now

    async def renew(self, credential: Credential) -> bool:
        """Run one token exchange for ``credential`` and record the outcome."""
        token, error = await self._exchange(credential)
        if token is None:
            await self.report_failure(credential, error)
            return False

        async with self._lock:
            credential.update_token(token)
        await self.report_success(credential)
        logger.info("%s bearer token renewed", credential.id)
        return True

    async def renew_expiring(self) -> int:
        async with self._lock:
            now = self._clock()
            due = [
                c for c in self.pool.credentials if needs_renewal(c.bearer_token, now)
            ]

        results = await asyncio.gather(*[self.renew(credential) for credential in due])
        renewed = sum(1 for result in results if result)
        if renewed:
            logger.info("Renewed bearer tokens for %d credentials", renewed)
        return renewed

    async def run_renewal_loop(self, interval_seconds: float) -> None:
        """Renew expiring tokens every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.renew_expiring()
            except Exception:
                logger.exception("Scheduled token renewal failed")

    async def get_status(self) -> Dict[str, object]:
        async with self._lock:
            now = self._clock()
            counts = self.pool.counts(now)
            available = sum(1 for c in self.pool.credentials if c.is_available(now))
            return {
                "total": len(self.pool.credentials),
                "available": available,
                "healthy": counts["healthy"],
                "degraded": counts["degraded"],
                "down": counts["down"],
                "initialized": self.pool.initialized,
                "credentials": [
                    self._format_credential_status(c, now)
                    for c in self.pool.credentials
                ],
            }

    async def get_credential_status(
        self, credential_id: str
    ) -> Optional[Dict[str, object]]:
        async with self._lock:
            credential = self.pool.find(credential_id)
            if not credential:
                return None
            return self._format_credential_status(credential, self._clock())

    async def _exchange(self, credential: Credential) -> Tuple[Optional[str], str]:
        try:
            return await self._exchanger.exchange_token(credential.secret), ""
        except Exception as exc:
            logger.error(
                "Token exchange failed for %s (secret=%s): %s",
                credential.id,
                credential.secret_prefix(),
                exc,
            )
            return None, str(exc) or exc.__class__.__name__

    def _format_credential_status(
        self, credential: Credential, now: float
    ) -> Dict[str, object]:
        return {
            "id": credential.id,
            "secret_prefix": credential.secret_prefix(),
            "status": credential.status_at(now),
            "available": credential.is_available(now),
            "failure_count": credential.failure_count,
            "has_token": credential.bearer_token is not None,
            "token_expired": not credential.has_valid_token(now),
            "token_expires_at": _isoformat(credential.token_expires_at),
            "next_eligible_at": _isoformat(credential.next_eligible_at),
            "last_used_at": _isoformat(credential.last_used_at),
            "last_error": credential.last_error,
        }


def _without(
    credentials: List[Credential], exclude_id: Optional[str]
) -> List[Credential]:
    if exclude_id is None:
        return credentials
    remaining = [c for c in credentials if c.id != exclude_id]
    return remaining or credentials


def _isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
