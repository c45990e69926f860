"""Usage-limit ledger: the only reader and writer of remaining attempts.

Two backends share one interface. Guests keep their counts in the
browser-session storage injected into their ``Identity``; registered
identities keep them in the ``usage_ledger`` table. ``ledger_for`` picks the
backend so callers never branch on where the counts live.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, MutableMapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ssbprep.constants import (
    FREE_TEST_LIMIT,
    GUEST_LIMITS_SESSION_KEY,
    GUEST_TEST_LIMIT,
    LIMIT_BUCKETS,
    PAID_TEST_LIMIT,
    TEST_LIMIT_BUCKET,
)
from ssbprep.db.database import read_with_retry, write_transaction
from ssbprep.db.models import TestSession, UsageLedgerEntry, UserAccount
from ssbprep.errors import PersistenceError
from ssbprep.services.identity import Identity

logger = logging.getLogger(__name__)


def bucket_for(test_type: str) -> str:
    """Ledger bucket a test type is charged to."""
    try:
        return TEST_LIMIT_BUCKET[test_type]
    except KeyError:
        raise ValueError(f"Unknown test type: {test_type}")


class GuestLedgerStore:
    """
    Counts held in session-scoped client storage.

    Read-modify-write is not atomic. Guest storage belongs to a single
    browsing session, so this path is best-effort by construction.
    """

    def __init__(self, storage: MutableMapping, db: Optional[Session] = None):
        self.storage = storage
        self.db = db

    def counts(self) -> Dict[str, int]:
        stored = self.storage.get(GUEST_LIMITS_SESSION_KEY)
        if not isinstance(stored, dict):
            stored = {}
        counts = {bucket: int(stored.get(bucket, GUEST_TEST_LIMIT)) for bucket in LIMIT_BUCKETS}
        if stored != counts:
            self.storage[GUEST_LIMITS_SESSION_KEY] = dict(counts)
        return counts

    def decrement(self, bucket: str) -> bool:
        counts = self.counts()
        if counts[bucket] <= 0:
            return False
        counts[bucket] -= 1
        self.storage[GUEST_LIMITS_SESSION_KEY] = counts
        return True

    def withhold(self) -> Dict[str, int]:
        counts = {bucket: 0 for bucket in LIMIT_BUCKETS}
        self.storage[GUEST_LIMITS_SESSION_KEY] = dict(counts)
        return counts

    def charge(self, bucket: str, session: TestSession) -> bool:
        """
        Take an attempt and flag the session.

        The counts live outside the database, so a failed flag write puts the
        attempt back instead of sharing a commit with it.
        """
        before = self.counts()
        charged = self.decrement(bucket)
        try:
            with write_transaction(self.db, "session charge"):
                _mark_charge(session, charged)
        except PersistenceError:
            if charged:
                self.storage[GUEST_LIMITS_SESSION_KEY] = before
            raise
        return charged


class DatabaseLedgerStore:
    """Server-persisted counts with an atomic check-and-subtract."""

    def __init__(self, db: Session, identity: Identity):
        self.db = db
        self.identity = identity

    def _default_limit(self) -> int:
        return PAID_TEST_LIMIT if has_active_subscription(self.db, self.identity) else FREE_TEST_LIMIT

    def _rows(self) -> Dict[str, UsageLedgerEntry]:
        rows = self.db.query(UsageLedgerEntry).filter(
            UsageLedgerEntry.identity == self.identity.id
        ).all()
        return {row.test_type: row for row in rows}

    def _seed_missing(self, missing) -> None:
        default = self._default_limit()
        try:
            with write_transaction(self.db, "seed usage ledger"):
                for bucket in missing:
                    self.db.add(UsageLedgerEntry(
                        identity=self.identity.id,
                        test_type=bucket,
                        remaining=default
                    ))
        except PersistenceError as e:
            # A concurrent request seeded the same rows first
            if not isinstance(e.__cause__, IntegrityError):
                raise
            return
        logger.info(
            f"Seeded usage ledger with {default} attempts for {', '.join(missing)}",
            extra={"identity": self.identity.id}
        )

    def counts(self) -> Dict[str, int]:
        rows = read_with_retry(self.db, self._rows, "usage ledger lookup")
        missing = [bucket for bucket in LIMIT_BUCKETS if bucket not in rows]
        if missing:
            self._seed_missing(missing)
            rows = read_with_retry(self.db, self._rows, "usage ledger lookup")
        return {bucket: rows[bucket].remaining for bucket in LIMIT_BUCKETS if bucket in rows}

    def _take(self, bucket: str) -> bool:
        updated = self.db.query(UsageLedgerEntry).filter(
            UsageLedgerEntry.identity == self.identity.id,
            UsageLedgerEntry.test_type == bucket,
            UsageLedgerEntry.remaining > 0
        ).update(
            {
                UsageLedgerEntry.remaining: UsageLedgerEntry.remaining - 1,
                UsageLedgerEntry.updated_at: datetime.utcnow(),
            },
            synchronize_session=False
        )
        return updated == 1

    def decrement(self, bucket: str) -> bool:
        self.counts()
        with write_transaction(self.db, "usage ledger decrement"):
            taken = self._take(bucket)
        return taken

    def charge(self, bucket: str, session: TestSession) -> bool:
        """Take an attempt and flag the session in the same commit."""
        self.counts()
        with write_transaction(self.db, "usage ledger decrement"):
            charged = self._take(bucket)
            _mark_charge(session, charged)
        return charged


def ledger_for(db: Session, identity: Identity):
    """Return the ledger backend that owns this identity's counts."""
    if identity.is_guest:
        if identity.storage is None:
            raise ValueError("Guest identity has no session storage attached")
        return GuestLedgerStore(identity.storage, db)
    return DatabaseLedgerStore(db, identity)


def has_active_subscription(db: Session, identity: Identity) -> bool:
    if identity.is_guest:
        return False
    account = read_with_retry(
        db,
        lambda: db.query(UserAccount).filter(UserAccount.id == identity.id).first(),
        "subscription lookup"
    )
    return account is not None and account.subscription_type == "paid"


def get_limits(db: Session, identity: Identity) -> Dict[str, int]:
    """
    Remaining attempts per bucket.

    Guests are seeded with one attempt per bucket on first access; registered
    identities with the free or paid default.

    Raises:
        PersistenceError: If the server-side read fails after one retry
    """
    return ledger_for(db, identity).counts()


def check_availability(db: Session, identity: Identity, test_type: str) -> bool:
    """Whether the identity may start ``test_type``. Fails closed."""
    bucket = bucket_for(test_type)
    try:
        limits = get_limits(db, identity)
    except PersistenceError:
        logger.error(
            f"Availability check failed for {test_type}, treating as unavailable",
            extra={"identity": identity.id, "test_type": test_type}
        )
        return False
    return limits.get(bucket, 0) > 0


def _run_charge(db: Session, identity: Identity, test_type: str, take: Callable[[], bool]) -> bool:
    bucket = bucket_for(test_type)
    log_extra = {"identity": identity.id, "test_type": test_type}
    try:
        success = take()
    except PersistenceError:
        logger.error(f"Usage decrement failed for {bucket}", extra=log_extra)
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Usage decrement failed for {bucket}: {e}", exc_info=True, extra=log_extra)
        raise PersistenceError("Could not complete usage ledger decrement") from e

    if success:
        logger.info(f"Consumed one {bucket} attempt", extra=log_extra)
    else:
        logger.warning(f"Decrement rejected, no {bucket} attempts remaining", extra=log_extra)
    return success


def decrement(db: Session, identity: Identity, test_type: str) -> bool:
    """
    Atomically re-check availability and subtract one attempt.

    Returns:
        True if an attempt was consumed, False if none remained

    Raises:
        PersistenceError: Storage failed and nothing was consumed; try again
    """
    store = ledger_for(db, identity)
    return _run_charge(db, identity, test_type, lambda: store.decrement(bucket_for(test_type)))


def _mark_charge(session: TestSession, charged: bool) -> None:
    session.limit_charged = charged
    if not charged:
        session.analysis_status = "limit_exceeded"
    elif session.analysis_status == "charge_failed":
        session.analysis_status = "not_requested"


def charge_session(db: Session, identity: Identity, session: TestSession) -> bool:
    """
    Consume the attempt for a completed session.

    The decrement and the session's ``limit_charged`` flag are written
    together, so a session is never charged without the flag or flagged
    without the charge. A session that is already charged is left alone.

    Returns:
        True if the session is charged, False if no attempts remained; the
        session is then marked ``limit_exceeded``

    Raises:
        PersistenceError: Storage failed and nothing was charged; try again
    """
    if session.limit_charged:
        return True
    store = ledger_for(db, identity)
    bucket = bucket_for(session.test_type)
    return _run_charge(db, identity, session.test_type, lambda: store.charge(bucket, session))


def withhold_guest_attempts(identity: Identity) -> Dict[str, int]:
    """
    Zero every bucket for a guest.

    Used when the guest's device already hosted too many guest identities, so
    a fresh browser session does not bring fresh attempts.
    """
    if not identity.is_guest:
        raise ValueError("Only guest attempts can be withheld")
    if identity.storage is None:
        raise ValueError("Guest identity has no session storage attached")
    logger.warning("Guest attempts withheld for this device", extra={"identity": identity.id})
    return GuestLedgerStore(identity.storage).withhold()


def activate_subscription(db: Session, identity: Identity) -> Dict[str, int]:
    """
    Elevate a registered identity to the paid tier.

    Every bucket is raised to at least the paid limit. The ledger never
    downgrades; cancellation is a billing concern.

    Returns:
        Limits after activation
    """
    if identity.is_guest:
        raise ValueError("Guest identities cannot hold a subscription")

    with write_transaction(db, "subscription activation"):
        account = db.query(UserAccount).filter(UserAccount.id == identity.id).first()
        if account is None:
            account = UserAccount(id=identity.id)
            db.add(account)
        if account.subscription_type != "paid":
            account.subscription_type = "paid"
            account.subscription_activated_at = datetime.utcnow()

        rows = {
            row.test_type: row
            for row in db.query(UsageLedgerEntry).filter(UsageLedgerEntry.identity == identity.id)
        }
        for bucket in LIMIT_BUCKETS:
            row = rows.get(bucket)
            if row is None:
                db.add(UsageLedgerEntry(identity=identity.id, test_type=bucket, remaining=PAID_TEST_LIMIT))
            elif row.remaining < PAID_TEST_LIMIT:
                row.remaining = PAID_TEST_LIMIT

    logger.info("Paid subscription activated", extra={"identity": identity.id})
    return get_limits(db, identity)
