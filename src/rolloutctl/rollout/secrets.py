"""Scoped, time-limited credential leases."""

import os
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from rolloutctl.core.exceptions import SecretError
from rolloutctl.core.logging import StructuredLogger
from rolloutctl.rollout.models import utcnow

logger = StructuredLogger(__name__)


class SecretLease:
    """Credentials valid for one scope until expiry or release."""

    def __init__(
        self,
        scope: str,
        credentials: dict[str, str],
        ttl: float,
        on_release: Callable[["SecretLease"], None] | None = None,
    ):
        self.id = uuid.uuid4().hex[:12]
        self.scope = scope
        self.expires_at: datetime = utcnow() + timedelta(seconds=ttl)
        self._credentials = dict(credentials)
        self._released = False
        self._on_release = on_release

    @property
    def expired(self) -> bool:
        return utcnow() >= self.expires_at

    @property
    def active(self) -> bool:
        return not self._released and not self.expired

    @property
    def credentials(self) -> dict[str, str]:
        """Lease credentials.

        Raises:
            SecretError: If the lease was released or has expired
        """
        if self._released:
            raise SecretError(f"Lease {self.id} for {self.scope} was released")
        if self.expired:
            raise SecretError(f"Lease {self.id} for {self.scope} has expired")
        return dict(self._credentials)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._credentials = {}
        if self._on_release:
            self._on_release(self)

    def __enter__(self) -> "SecretLease":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class SecretStore(Protocol):
    """Supplies credentials to install actions and probes."""

    def lease(self, scope: str, ttl: float | None = None) -> SecretLease: ...


class EnvSecretStore:
    """Lease credentials from ``<prefix>*`` environment variables.

    ``ROLLOUT_SECRET_DEPLOY_TOKEN`` becomes ``DEPLOY_TOKEN`` in the lease.
    A scope-specific variable such as ``ROLLOUT_SECRET_SITE_A__DEPLOY_TOKEN``
    overrides the shared value for target ``site-a``.
    """

    def __init__(self, prefix: str = "ROLLOUT_SECRET_", default_ttl: float = 900.0):
        self._prefix = prefix
        self._default_ttl = default_ttl
        self._active: dict[str, SecretLease] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _scope_key(scope: str) -> str:
        return "".join(c if c.isalnum() else "_" for c in scope).upper()

    def _read(self, scope: str) -> dict[str, str]:
        shared: dict[str, str] = {}
        scoped: dict[str, str] = {}
        scope_prefix = f"{self._scope_key(scope)}__"
        for key, value in os.environ.items():
            if not key.startswith(self._prefix):
                continue
            name = key[len(self._prefix):]
            if name.startswith(scope_prefix):
                scoped[name[len(scope_prefix):]] = value
            elif "__" not in name:
                shared[name] = value
        return {**shared, **scoped}

    def lease(self, scope: str, ttl: float | None = None) -> SecretLease:
        lease = SecretLease(
            scope=scope,
            credentials=self._read(scope),
            ttl=ttl if ttl is not None else self._default_ttl,
            on_release=self._forget,
        )
        with self._lock:
            self._active[lease.id] = lease
        logger.debug("Leased credentials", scope=scope, lease=lease.id)
        return lease

    def _forget(self, lease: SecretLease) -> None:
        with self._lock:
            self._active.pop(lease.id, None)
        logger.debug("Released credentials", scope=lease.scope, lease=lease.id)

    @property
    def active_leases(self) -> int:
        with self._lock:
            return len(self._active)
