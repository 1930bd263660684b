"""
Reconciler — merges push notifications and on-demand pulls into one view.

Every push is treated as "something changed server-side": the payload is only
logged and a full re-fetch of deliveries, personnel and fleet stats follows.

Coalescing:
  - At most one refresh in flight and at most one pending, whatever the burst size
  - Signals arriving during a flight only mark the view dirty; when the flight
    lands, exactly one more refresh runs
  - A refresh retired by stop() or by timeout never applies its result

Applying a fetch:
  - Collections are replaced wholesale, keyed by id
  - Deliveries written locally while the fetch was in flight are checked for
    staleness: an older revision, or a backwards move of status / collected
    count, proves the fetched record is older and the local one is kept
  - When neither can be proven the fetched record wins (last completed fetch),
    the ambiguity is logged and one follow-up refresh is scheduled
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from config import settings
from errors import DeliveryError
from models import Delivery
from schemas import DeliveryNotification
from services.delivery_store import DeliveryStore
from services.marketplace import DataAccess
from services.progress_tracker import STATUS_RANK
from services.stats import FleetSnapshot, fleet_snapshot

logger = logging.getLogger(__name__)


@dataclass
class ReconcilerCounters:
    signals: int = 0
    coalesced: int = 0
    refreshes: int = 0
    failures: int = 0
    retired: int = 0
    ambiguous: int = 0


def is_behind(fetched: Delivery, local: Delivery) -> bool:
    """True when `fetched` is provably older than `local` along the monotonic fields."""
    if fetched.revision is not None and local.revision is not None:
        return fetched.revision < local.revision
    fetched_rank = STATUS_RANK[fetched.status]
    local_rank = STATUS_RANK[local.status]
    if fetched_rank != local_rank:
        return fetched_rank < local_rank
    return fetched.collected_products < local.collected_products


def same_state(a: Delivery, b: Delivery) -> bool:
    return (
        a.status == b.status
        and a.collected_products == b.collected_products
        and a.delivery_person_id == b.delivery_person_id
    )


class Reconciler:
    def __init__(
        self,
        store: DeliveryStore,
        client: DataAccess,
        refresh_timeout: float | None = None,
    ):
        self.store = store
        self.client = client
        self.refresh_timeout = refresh_timeout or settings.REFRESH_TIMEOUT_SEC

        self.remote_snapshot: FleetSnapshot | None = None
        self.last_refresh_at: datetime | None = None
        self.last_error: str | None = None
        self.counters = ReconcilerCounters()

        self._dirty = False
        self._closed = False
        self._worker: asyncio.Task | None = None
        self._ticket = 0
        self._applied_ticket = 0
        self._retired: set[int] = set()

    # ── State ──────────────────────────────────────────────

    @property
    def in_flight(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> bool:
        return self._dirty

    # ── Signals ────────────────────────────────────────────

    def invalidate(self, notification: DeliveryNotification | None = None):
        """Record an invalidation and make sure exactly one refresh will follow it."""
        self.counters.signals += 1
        if notification is not None:
            logger.info(
                "Push %s for delivery %s: %s",
                notification.kind.value, notification.delivery_id, notification.message,
            )
        if self._closed:
            logger.debug("Reconciler stopped — ignoring invalidation")
            return

        if self.in_flight:
            self.counters.coalesced += 1
            self._dirty = True
            return

        self._dirty = True
        self._worker = asyncio.get_running_loop().create_task(self._drain())
        self._worker.add_done_callback(self._worker_done)

    async def refresh(self) -> bool:
        """
        Pull now and wait until the view reflects a fetch started after this call.

        Returns:
            True if that fetch was applied, False if it failed or was retired
        """
        if self._closed:
            return False
        self.invalidate()
        worker = self._worker
        if worker is not None:
            await asyncio.shield(worker)
        return self.last_error is None

    # ── Lifecycle ──────────────────────────────────────────

    def start(self):
        self._closed = False
        self.invalidate()

    async def stop(self):
        self._closed = True
        self._dirty = False
        worker = self._worker
        if worker is not None and not worker.done():
            self._retired.add(self._ticket)
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        logger.info(
            "Reconciler stopped: %d signals, %d coalesced, %d refreshes, %d failures",
            self.counters.signals, self.counters.coalesced,
            self.counters.refreshes, self.counters.failures,
        )

    # ── Worker ─────────────────────────────────────────────

    async def _drain(self):
        while self._dirty and not self._closed:
            self._dirty = False
            await self._refresh_once()

    def _worker_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Reconciler worker crashed: %r", exc)
            self.last_error = repr(exc)

    async def _refresh_once(self) -> bool:
        self._ticket += 1
        ticket = self._ticket
        since = self.store.generation

        try:
            deliveries, persons, snapshot = await asyncio.wait_for(
                asyncio.gather(
                    self.client.fetch_deliveries(),
                    self.client.fetch_personnel(),
                    self.client.fetch_stats(),
                ),
                timeout=self.refresh_timeout,
            )
        except asyncio.TimeoutError:
            self._retired.add(ticket)
            self.counters.retired += 1
            self.last_error = f"refresh timed out after {self.refresh_timeout}s"
            logger.warning("Refresh #%d retired after %.1fs — keeping current view", ticket, self.refresh_timeout)
            return False
        except DeliveryError as e:
            self.counters.failures += 1
            self.last_error = e.message
            logger.warning("Refresh #%d failed — keeping current view: %s", ticket, e.message)
            return False

        if ticket in self._retired or ticket <= self._applied_ticket:
            logger.info("Dropping result of retired refresh #%d", ticket)
            return False

        count = self.store.replace_all(
            deliveries, persons,
            since=since,
            resolve=lambda local, fetched: self._resolve(ticket, local, fetched),
        )
        self._applied_ticket = ticket
        self.remote_snapshot = snapshot
        self.last_refresh_at = datetime.now(timezone.utc)
        self.last_error = None
        self.counters.refreshes += 1

        local = fleet_snapshot(self.store)
        if local.total_deliveries != snapshot.total_deliveries:
            logger.debug(
                "Remote stats report %d deliveries, view holds %d",
                snapshot.total_deliveries, local.total_deliveries,
            )
        logger.info("Refresh #%d applied: %d deliveries, %d personnel", ticket, count, len(persons))
        return True

    def _resolve(self, ticket: int, local: Delivery, fetched: Delivery) -> Delivery:
        """Choose between a local mutation and the fetched record of the same delivery."""
        if same_state(local, fetched):
            return fetched
        if is_behind(fetched, local):
            logger.info(
                "Refresh #%d: delivery %s is behind the local write (%s vs %s) — keeping local",
                ticket, local.id, fetched.status.value, local.status.value,
            )
            return local

        self.counters.ambiguous += 1
        self._dirty = True
        logger.warning(
            "Refresh #%d: delivery %s changed locally during the fetch and order cannot "
            "be proven — taking fetched state and refreshing again",
            ticket, local.id,
        )
        return fetched
