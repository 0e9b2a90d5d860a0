import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler

import ledger_codec
from activation import activation_mutation
from errors import ConflictError, NotFoundError, RemoteStoreError, TransientIOError
from records import FeatureId, Ledger, LicenseRecord, canonical_serial
from remote_store import RemoteLocator, RemoteStore

logger = logging.getLogger(__name__)

Mutation = Callable[[Ledger], Ledger]

def utc_today() -> date:
    return datetime.now(timezone.utc).date()

class LedgerStore:
    """
    In-memory license ledger mirrored to a remote object.

    The in-memory ledger answers every read. Mutations are serialized by one
    asyncio lock and installed by swapping in a new mapping, so readers only
    ever see a complete ledger. After each mutation the whole ledger is
    committed against the last version token seen; a failed commit is logged
    and the remote simply lags until the next successful one.

    Mutations not yet covered by a successful commit are kept in order.
    Whenever the remote's current content is unknown (the initial load
    failed, or a conflict is being retried) the store fetches it and replays
    those mutations on top before committing, so it never writes over a
    revision it has not seen.
    """

    def __init__(
        self,
        remote: RemoteStore,
        locator: RemoteLocator,
        clock: Callable[[], date] = utc_today,
        conflict_retries: int = 0,
    ):
        self.remote = remote
        self.locator = locator
        self.clock = clock
        self.conflict_retries = conflict_retries
        self.scheduler = AsyncIOScheduler()

        self._ledger: Ledger = {}
        self._version: Optional[str] = None
        # True once a fetch returned the object or reported it absent
        self._remote_seen = False
        self._pending: List[Tuple[int, Mutation]] = []
        self._sequence = 0
        self._lock = asyncio.Lock()

    @property
    def version(self) -> Optional[str]:
        return self._version

    @property
    def dirty(self) -> bool:
        return bool(self._pending)

    def __len__(self) -> int:
        return len(self._ledger)

    async def load(self) -> None:
        """Replace the in-memory ledger with the remote object. Never raises."""
        try:
            blob = await self.remote.fetch(self.locator)
        except NotFoundError:
            logger.warning("Ledger %s not found, starting with an empty ledger", self.locator)
            ledger, version, seen = {}, None, True
        except RemoteStoreError as e:
            logger.error("Failed to load ledger from %s: %s", self.locator, e)
            ledger, version, seen = {}, None, False
        else:
            ledger, version, seen = ledger_codec.decode(blob.content), blob.version, True
            logger.info("Loaded %d license records from %s (version %s)",
                        len(ledger), self.locator, version)

        async with self._lock:
            self._ledger = ledger
            self._version = version
            self._remote_seen = seen
            self._pending = []

    def query(self, serial: str) -> Optional[LicenseRecord]:
        return self._ledger.get(canonical_serial(serial))

    def snapshot(self) -> Ledger:
        return dict(self._ledger)

    async def apply(self, mutation: Mutation) -> Ledger:
        """Run mutation on a copy of the ledger and install the result."""
        async with self._lock:
            updated = mutation(dict(self._ledger))
            if updated != self._ledger:
                self._ledger = updated
                self._sequence += 1
                self._pending.append((self._sequence, mutation))
            return updated

    async def persist(self, message: str) -> bool:
        """
        Commit the full current ledger. Returns True on success.

        Conflicts and transport failures are logged, not raised. Without
        retries the in-memory ledger is left untouched; a retried conflict
        rebases it onto the remote's newer revision first.
        """
        if not self._remote_seen and not await self._rebase():
            logger.error("Remote state of %s is unknown, deferring commit", self.locator)
            return False

        for attempt in range(self.conflict_retries + 1):
            ledger = self._ledger
            expected = self._version
            covered = self._sequence
            content = ledger_codec.encode(ledger).encode("utf-8")

            try:
                version = await self.remote.commit(self.locator, content, message, expected)
            except ConflictError as e:
                logger.warning("Ledger commit conflict on %s: %s", self.locator, e)
                if attempt >= self.conflict_retries or not await self._rebase():
                    return False
                continue
            except TransientIOError as e:
                logger.error("Ledger commit to %s failed: %s", self.locator, e)
                return False

            self._version = version
            self._pending = [(seq, m) for seq, m in self._pending if seq > covered]
            logger.info("Ledger committed to %s (version %s)", self.locator, version)
            return True

        return False

    async def _rebase(self) -> bool:
        """Fetch the remote ledger and replay uncommitted mutations onto it."""
        try:
            blob = await self.remote.fetch(self.locator)
        except NotFoundError:
            base, version = {}, None
        except RemoteStoreError as e:
            logger.error("Could not refresh ledger from %s: %s", self.locator, e)
            return False
        else:
            base, version = ledger_codec.decode(blob.content), blob.version

        async with self._lock:
            ledger = base
            for _, mutation in self._pending:
                ledger = mutation(dict(ledger))
            self._ledger = ledger
            self._version = version
            self._remote_seen = True
            replayed = len(self._pending)

        logger.info("Replayed %d uncommitted changes onto %s (version %s)",
                    replayed, self.locator, version)
        return True

    async def apply_and_persist(self, mutation: Mutation, message: str) -> Ledger:
        """
        Install mutation locally, then mirror the ledger remotely.

        The returned ledger is the one installed, whatever the commit outcome.
        """
        ledger = await self.apply(mutation)
        await self.persist(message)
        return ledger

    async def activate(
        self,
        serial: str,
        purchased: Iterable[FeatureId],
        today: Optional[date] = None,
    ) -> Optional[LicenseRecord]:
        """
        Record a completed purchase for serial.

        An empty serial is accepted and ignored. Returns the installed record.
        """
        key = canonical_serial(serial)
        if not key:
            logger.info("Purchase without a serial number, ledger unchanged")
            return None

        await self.apply_and_persist(
            activation_mutation(key, purchased, today or self.clock()),
            message=f"feat(license): update {key} via Stripe webhook",
        )
        return self.query(key)

    async def flush_if_dirty(self) -> bool:
        """Recommit the ledger if the remote is known to lag behind it."""
        if not self.dirty:
            return False
        logger.info("Ledger has uncommitted changes, resyncing %s", self.locator)
        return await self.persist("chore: resync license database")

    def start_resync(self, interval_minutes: int) -> None:
        """Start the periodic resync job."""
        if interval_minutes <= 0 or self.scheduler.running:
            return
        self.scheduler.add_job(
            self.flush_if_dirty,
            'interval',
            minutes=interval_minutes,
            id='ledger_resync',
        )
        self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
