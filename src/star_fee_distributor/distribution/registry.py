"""Vault registry: maps a vault to its Policy/Progress pair."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

from solders.pubkey import Pubkey

from .errors import AlreadyInitialized, NotInitialized
from .state import Policy, Progress, VaultAccounts


class VaultStore(Protocol):
    """Persistence backend for vault records."""

    def load_policy(self, vault: Pubkey) -> Optional[Policy]: ...

    def load_progress(self, vault: Pubkey) -> Optional[Progress]: ...

    def create_vault(self, policy: Policy, progress: Progress) -> None: ...

    def commit_progress(self, progress: Progress, payouts: Sequence[object] = ()) -> None:
        """Persist ``progress`` and the page's payout lines in one transaction."""

    def list_vaults(self) -> List[Pubkey]: ...

    def record_page_size(self, vault: Pubkey, day: int, page_size: int) -> None:
        """Remember the page size a keeper used to split ``day`` into pages."""

    def page_size_for(self, vault: Pubkey, day: int) -> Optional[int]: ...


class InMemoryVaultStore:
    """Dictionary-backed store used by tests and dry runs."""

    def __init__(self) -> None:
        self._policies: Dict[Pubkey, bytes] = {}
        self._progress: Dict[Pubkey, bytes] = {}
        self._page_sizes: Dict[Tuple[Pubkey, int], int] = {}
        self.payouts: List[object] = []

    def load_policy(self, vault: Pubkey) -> Optional[Policy]:
        data = self._policies.get(vault)
        return Policy.from_bytes(data) if data is not None else None

    def load_progress(self, vault: Pubkey) -> Optional[Progress]:
        data = self._progress.get(vault)
        return Progress.from_bytes(data) if data is not None else None

    def create_vault(self, policy: Policy, progress: Progress) -> None:
        if policy.vault in self._policies:
            raise AlreadyInitialized(vault=str(policy.vault))
        # encode both before storing either
        policy_bytes = policy.to_bytes()
        progress_bytes = progress.to_bytes()
        self._policies[policy.vault] = policy_bytes
        self._progress[progress.vault] = progress_bytes

    def commit_progress(self, progress: Progress, payouts: Sequence[object] = ()) -> None:
        self._progress[progress.vault] = progress.to_bytes()
        self.payouts.extend(payouts)

    def list_vaults(self) -> List[Pubkey]:
        return list(self._policies)

    def record_page_size(self, vault: Pubkey, day: int, page_size: int) -> None:
        self._page_sizes[(vault, day)] = page_size

    def page_size_for(self, vault: Pubkey, day: int) -> Optional[int]:
        return self._page_sizes.get((vault, day))


class VaultRegistry:
    """Serializes access to each vault and hands out copies of its records.

    Callers mutate the returned Progress freely; nothing is visible to other
    callers until :meth:`commit`.
    """

    def __init__(self, store: Optional[VaultStore] = None) -> None:
        self._store: VaultStore = store if store is not None else InMemoryVaultStore()
        self._guard = threading.Lock()
        self._locks: Dict[Pubkey, threading.RLock] = {}

    @property
    def store(self) -> VaultStore:
        return self._store

    def _lock_for(self, vault: Pubkey) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(vault)
            if lock is None:
                lock = threading.RLock()
                self._locks[vault] = lock
            return lock

    @contextmanager
    def locked(self, vault: Pubkey) -> Iterator[None]:
        lock = self._lock_for(vault)
        with lock:
            yield

    def exists(self, vault: Pubkey) -> bool:
        return self._store.load_policy(vault) is not None

    def create(self, policy: Policy, progress: Progress) -> VaultAccounts:
        with self.locked(policy.vault):
            if self.exists(policy.vault):
                raise AlreadyInitialized(vault=str(policy.vault))
            self._store.create_vault(policy, progress)
        return VaultAccounts(policy=policy, progress=progress.copy())

    def load(self, vault: Pubkey) -> VaultAccounts:
        policy = self._store.load_policy(vault)
        progress = self._store.load_progress(vault)
        if policy is None or progress is None:
            raise NotInitialized(vault=str(vault))
        return VaultAccounts(policy=policy, progress=progress)

    def commit(self, progress: Progress, payouts: Sequence[object] = ()) -> None:
        with self.locked(progress.vault):
            if self._store.load_policy(progress.vault) is None:
                raise NotInitialized(vault=str(progress.vault))
            self._store.commit_progress(progress, payouts)

    def vaults(self) -> List[Pubkey]:
        return self._store.list_vaults()

    def record_page_size(self, vault: Pubkey, day: int, page_size: int) -> None:
        with self.locked(vault):
            self._store.record_page_size(vault, day, page_size)

    def page_size_for(self, vault: Pubkey, day: int) -> Optional[int]:
        return self._store.page_size_for(vault, day)


__all__ = ["InMemoryVaultStore", "VaultRegistry", "VaultStore"]
