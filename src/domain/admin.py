"""
Admin domain service - owner identity, owner credentials and pool creation.

The registry has exactly one owner. Every admin mutation (allow-list
changes, ownership transfer, pool creation) checks the caller against the
persisted owner record; there is no ambient global owner.

Owner credentials are stored as bcrypt hashes. authenticate() always runs
a bcrypt comparison, against a dummy hash when the account does not match,
so response time does not reveal whether the account id was right.
"""

import logging
import secrets
from dataclasses import dataclass

import bcrypt

from .exceptions import NotOwner
from .models import Pool, RegistryEvent
from .ports import EventSink, RegistryRepository

logger = logging.getLogger(__name__)

_DUMMY_BCRYPT_HASH = bcrypt.hashpw(b"dummy_password_for_timing_safety", bcrypt.gensalt(10)).decode()


def hash_password(password: str, cost: int) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=cost)).decode()


def verify_password(password: str, stored_hash: str | None) -> bool:
    """
    bcrypt comparison that costs the same whether or not a hash is stored.

    With no stored hash the password is checked against a dummy hash and the
    result is always False.
    """
    password_valid = bcrypt.checkpw(password.encode(), (stored_hash or _DUMMY_BCRYPT_HASH).encode())
    return password_valid and bool(stored_hash)


@dataclass
class AdminService:
    """Domain service for the registry's admin surface."""

    repository: RegistryRepository
    events: EventSink
    bcrypt_cost: int = 10

    def bootstrap_owner(self, account_id: str, password: str) -> bool:
        """
        Persist the initial owner if none exists yet.

        Returns:
            True if the owner was created, False if one was already persisted
        """
        if self.repository.get_owner() is not None:
            return False
        self.repository.set_owner(account_id, self._hash_password(password))
        logger.info("Registry owner initialised: %s", account_id)
        return True

    def owner_id(self) -> str | None:
        owner = self.repository.get_owner()
        return owner.account_id if owner else None

    def authenticate(self, account_id: str, password: str) -> str:
        """
        Check owner credentials.

        Returns:
            The owner account id

        Raises:
            NotOwner: account is not the owner or password does not match
        """
        owner = self.repository.get_owner()
        account_valid = owner is not None and secrets.compare_digest(
            owner.account_id.encode(), account_id.encode()
        )

        # Always run bcrypt so a wrong account id costs the same as a wrong password
        password_valid = verify_password(password, owner.password_hash if account_valid else None)

        if not (account_valid and password_valid):
            raise NotOwner(account_id)
        return account_id

    def require_owner(self, caller: str) -> None:
        if self.owner_id() != caller:
            raise NotOwner(caller)

    def change_owner(self, caller: str, new_owner_id: str, new_password: str) -> None:
        self.require_owner(caller)
        self.repository.set_owner(new_owner_id, self._hash_password(new_password))
        self.events.emit(
            RegistryEvent(
                "owner_changed",
                {"old_owner_id": caller, "new_owner_id": new_owner_id},
            )
        )

    def create_pool(self, caller: str, token_ids: list[str], fee_bps: int) -> Pool:
        """
        Append a new pool for a pair of distinct tokens.

        Raises:
            NotOwner: caller is not the owner
            InvalidPool: token pair or fee violates pool invariants
        """
        self.require_owner(caller)
        tokens = Pool.validate(token_ids, fee_bps)
        pool = self.repository.create_pool(tokens, fee_bps)
        self.events.emit(
            RegistryEvent(
                "pool_created",
                {"pool_id": pool.pool_id, "token_ids": list(pool.token_ids), "fee_bps": fee_bps},
            )
        )
        return pool

    def _hash_password(self, password: str) -> str:
        return hash_password(password, self.bcrypt_cost)
