import itertools
import logging
import secrets
import string
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Iterator, Optional
from uuid import uuid4

from .errors import (
    AccountExistsError,
    AccountNotFoundError,
    ConcurrentModificationError,
    IdempotencyConflictError,
    PayoutNotFoundError,
    StoreUnavailableError,
)
from .models import Account, PayoutRequest, Transaction

logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8

CommitListener = Callable[[list[Transaction]], None]


@dataclass(frozen=True)
class BalanceChange:
    account_id: str
    expected_version: int
    new_balance: Decimal


@dataclass
class _LockSlot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class KeyedLocks:
    """
    One lock per key, created on first use.

    A key's lock is dropped once no caller holds or waits on it, so keys
    that are used once (idempotency keys, payout ids) do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._slots: dict[str, _LockSlot] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)

    def locked(self, key: str) -> bool:
        with self._guard:
            slot = self._slots.get(key)
            return slot is not None and slot.lock.locked()

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # Sorted acquisition order keeps two-account operations deadlock free
        ordered = sorted(set(keys))
        with self._guard:
            slots = [self._slots.setdefault(key, _LockSlot()) for key in ordered]
            for slot in slots:
                slot.users += 1

        acquired = []
        try:
            for slot in slots:
                slot.lock.acquire()
                acquired.append(slot)
            yield
        finally:
            for slot in reversed(acquired):
                slot.lock.release()
            with self._guard:
                for key, slot in zip(ordered, slots):
                    slot.users -= 1
                    if slot.users == 0 and self._slots.get(key) is slot:
                        del self._slots[key]


def normalize_referral_code(code: str) -> str:
    return code.strip().upper()


class AccountStore:
    """
    In-memory account store.

    Mutations go through ``commit`` while the caller holds the involved
    account locks from ``locks``. Reads take no locks.
    """

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.account_transactions: dict[str, list[str]] = {}
        self.referral_index: dict[str, str] = {}
        self.idempotency_index: dict[str, dict] = {}
        self.payout_requests: dict[str, dict] = {}
        self.locks = KeyedLocks()
        self._index_lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._listeners: list[CommitListener] = []
        self._open = True

    # connection state

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def ping(self) -> bool:
        return self._open

    def _ensure_open(self) -> None:
        if not self._open:
            raise StoreUnavailableError("Account store is unavailable")

    # accounts

    def create_account(
        self,
        account_id: Optional[str] = None,
        payout_profile_ref: Optional[str] = None,
    ) -> Account:
        self._ensure_open()
        account_id = account_id or str(uuid4())
        with self._index_lock:
            if account_id in self.accounts:
                raise AccountExistsError(f"Account {account_id} already exists")
            record = self._insert_account(account_id, payout_profile_ref)
        return Account(**record)

    def ensure_account(self, account_id: str) -> Account:
        """Return ``account_id``, creating it on first use. Used for system accounts."""
        self._ensure_open()
        with self._index_lock:
            record = self.accounts.get(account_id) or self._insert_account(account_id, None)
        return Account(**record)

    def _insert_account(self, account_id: str, payout_profile_ref: Optional[str]) -> dict:
        # caller holds _index_lock
        code = self._new_referral_code()
        record = {
            "id": account_id,
            "balance": Decimal("0.000"),
            "version": 0,
            "referral_code": code,
            "referred_by": None,
            "payout_profile_ref": payout_profile_ref,
            "created_at": datetime.now(timezone.utc),
        }
        self.accounts[account_id] = record
        self.referral_index[code] = account_id
        self.account_transactions[account_id] = []
        logger.info("account created id=%s referral_code=%s", account_id, code)
        return record

    def _new_referral_code(self) -> str:
        while True:
            code = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
            if code not in self.referral_index:
                return code

    def get_account(self, account_id: str) -> Account:
        self._ensure_open()
        return Account(**self._require(account_id))

    def _require(self, account_id: str) -> dict:
        record = self.accounts.get(account_id)
        if record is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return record

    def find_by_referral_code(self, code: str) -> Optional[Account]:
        self._ensure_open()
        account_id = self.referral_index.get(normalize_referral_code(code))
        if account_id is None:
            return None
        return Account(**self.accounts[account_id])

    def list_accounts(self) -> list[Account]:
        self._ensure_open()
        return [Account(**record) for record in list(self.accounts.values())]

    def set_payout_profile(self, account_id: str, payout_profile_ref: str) -> Account:
        self._ensure_open()
        with self.locks.hold(account_id):
            record = self._require(account_id)
            record["payout_profile_ref"] = payout_profile_ref
            record["version"] += 1
            return Account(**record)

    # transactions

    def transactions_for(self, account_id: str) -> list[Transaction]:
        """Transactions of one account, oldest first."""
        self._ensure_open()
        self._require(account_id)
        ids = list(self.account_transactions.get(account_id, ()))
        return [Transaction(**self.transactions[tx_id]) for tx_id in ids]

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        self._ensure_open()
        entry = self.transactions.get(transaction_id)
        return Transaction(**entry) if entry else None

    def iter_transactions(self) -> Iterator[Transaction]:
        self._ensure_open()
        for entry in list(self.transactions.values()):
            yield Transaction(**entry)

    def find_idempotent(self, key: str) -> Optional[dict]:
        self._ensure_open()
        return self.idempotency_index.get(key)

    def subscribe(self, listener: CommitListener) -> None:
        self._listeners.append(listener)

    def commit(
        self,
        changes: Iterable[BalanceChange],
        entries: list[dict],
        *,
        account_updates: Optional[dict[str, dict]] = None,
        idempotency: Optional[tuple] = None,
    ) -> list[Transaction]:
        """
        Apply one atomic unit of work.

        The caller must hold the locks of every account in ``changes`` and
        ``account_updates``. ``idempotency`` is ``(key, fingerprint, result)``.
        """
        self._ensure_open()
        changes = list(changes)
        account_updates = account_updates or {}

        for change in changes:
            record = self._require(change.account_id)
            if record["version"] != change.expected_version:
                raise ConcurrentModificationError(
                    f"Account {change.account_id} changed: expected version "
                    f"{change.expected_version}, found {record['version']}"
                )
            if change.new_balance < 0:
                raise ValueError(f"Refusing negative balance for account {change.account_id}")
        for account_id in account_updates:
            self._require(account_id)

        with self._index_lock:
            if idempotency is not None:
                key, fingerprint, result = idempotency
                if key in self.idempotency_index:
                    raise IdempotencyConflictError(f"Idempotency key {key} is already in use")
                self.idempotency_index[key] = {"fingerprint": fingerprint, "result": result}
            for entry in entries:
                entry["sequence"] = next(self._sequence)

        touched = set()
        for change in changes:
            self.accounts[change.account_id]["balance"] = change.new_balance
            touched.add(change.account_id)
        for account_id, fields in account_updates.items():
            self.accounts[account_id].update(fields)
            touched.add(account_id)
        for account_id in touched:
            self.accounts[account_id]["version"] += 1

        for entry in entries:
            self.transactions[entry["id"]] = entry
            self.account_transactions.setdefault(entry["account_id"], []).append(entry["id"])

        committed = [Transaction(**entry) for entry in entries]
        for listener in self._listeners:
            listener(committed)
        return committed

    # payout requests

    def save_payout(self, record: dict) -> PayoutRequest:
        self._ensure_open()
        self.payout_requests[record["id"]] = record
        return PayoutRequest(**record)

    def update_payout(self, payout_id: str, **fields) -> PayoutRequest:
        self._ensure_open()
        record = self.payout_requests.get(payout_id)
        if record is None:
            raise PayoutNotFoundError(f"Payout request {payout_id} not found")
        record.update(fields)
        return PayoutRequest(**record)

    def get_payout(self, payout_id: str) -> PayoutRequest:
        self._ensure_open()
        record = self.payout_requests.get(payout_id)
        if record is None:
            raise PayoutNotFoundError(f"Payout request {payout_id} not found")
        return PayoutRequest(**record)

    def find_payout(
        self,
        external_reference: Optional[str] = None,
        reservation_transaction_id: Optional[str] = None,
    ) -> Optional[PayoutRequest]:
        self._ensure_open()
        for record in list(self.payout_requests.values()):
            if external_reference and record["external_reference"] == external_reference:
                return PayoutRequest(**record)
            if reservation_transaction_id and record["reservation_transaction_id"] == reservation_transaction_id:
                return PayoutRequest(**record)
        return None

    def list_payouts(self, account_id: Optional[str] = None) -> list[PayoutRequest]:
        self._ensure_open()
        payouts = [
            PayoutRequest(**record) for record in list(self.payout_requests.values())
            if account_id is None or record["account_id"] == account_id
        ]
        payouts.sort(key=lambda p: p.created_at)
        return payouts
