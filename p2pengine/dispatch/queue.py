"""Auto-buy dispatch queue — places counter-orders with bounded retry.

State machine per dispatch::

    PENDING → RUNNING → SUCCEEDED | RETRYING | DEAD
    RETRYING → RUNNING            (next attempt, after backoff)
    PENDING | RETRYING → CANCELLED  (operator)
    DEAD | RETRYING → RETRYING      (operator retry)

Every placement attempt for a dispatch carries the same idempotency token.
After an ambiguous failure (request sent, response lost) the next attempt
first asks the synchronizer whether the venue already holds an order for
that token, and only places a new order when it does not.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from p2pengine.backoff import backoff_delay
from p2pengine.config import Config
from p2pengine.dispatch.intents import FiatAmountIntent, parse_intent, to_placement
from p2pengine.dispatch.models import (
    RUNNABLE_DISPATCH_STATES,
    Dispatch,
    DispatchSource,
    DispatchState,
)
from p2pengine.errors import (
    AmbiguousNetworkFailure,
    DuplicateIntentRejected,
    IllegalTransition,
    NotFound,
    VenueError,
    VenueRejected,
)
from p2pengine.positioning.models import Side
from p2pengine.repos.dispatch_repo import DispatchRepo
from p2pengine.repos.order_repo import OrderRepo
from p2pengine.sync.lifecycle import OrderStatus
from p2pengine.sync.models import Order
from p2pengine.sync.synchronizer import OrderSynchronizer

logger = logging.getLogger("p2pengine.dispatch")

# Venue clocks drift; look slightly before created_at when resolving tokens.
_RESOLVE_SKEW = timedelta(minutes=5)
_QUANTITY_STEP = Decimal("0.00000001")


class DispatchQueue:
    """Accepts buy intents and executes them against the venue.

    Args:
        config: Application configuration.
        clients: ``{merchant_id: VenueClient}``.
        dispatch_repo: Dispatch store.
        order_repo: Order cache, written on success.
        synchronizer: Used to resolve ambiguous attempts and to refresh
                      an order right after it is placed.
        sync_on_success: Refresh the new order from the venue after a
                         successful placement.
    """

    def __init__(
        self,
        config: Config,
        clients: dict,
        dispatch_repo: DispatchRepo,
        order_repo: OrderRepo,
        synchronizer: OrderSynchronizer,
        sync_on_success: bool = True,
    ) -> None:
        self._config = config
        self._clients = clients
        self._dispatch_repo = dispatch_repo
        self._order_repo = order_repo
        self._synchronizer = synchronizer
        self._sync_on_success = sync_on_success
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._running: bool = False

    # ── Operator / producer API ──────────────────────────────────────────

    def enqueue(
        self,
        merchant_id: str,
        payload: dict,
        source: DispatchSource = DispatchSource.MANUAL,
    ) -> Dispatch:
        """Validate *payload* and persist a PENDING dispatch.

        Returns immediately; execution happens in :meth:`run` or an
        explicit :meth:`process` call.

        Raises:
            NotFound: unknown merchant.
            IntentValidationError: payload matches no intent variant.
        """
        if merchant_id not in self._clients:
            raise NotFound(f"Unknown merchant: {merchant_id}")
        intent = parse_intent(payload)

        now = datetime.now(timezone.utc)
        dispatch = Dispatch(
            id=uuid.uuid4().hex,
            merchant_id=merchant_id,
            intent=intent.model_dump(mode="json"),
            state=DispatchState.PENDING,
            attempt_count=0,
            idempotency_token=uuid.uuid4().hex,
            source=DispatchSource(source),
            created_at=now,
            updated_at=now,
        )
        self._dispatch_repo.insert(dispatch)
        logger.info(
            "Dispatch %s enqueued for %s (%s, %s)",
            dispatch.id, merchant_id, intent.kind, dispatch.source.value,
        )
        return dispatch

    def get(self, merchant_id: str, dispatch_id: str) -> Dispatch:
        dispatch = self._dispatch_repo.get(dispatch_id, merchant_id=merchant_id)
        if dispatch is None:
            raise NotFound(f"Dispatch {dispatch_id} not found")
        return dispatch

    def list_dispatches(
        self,
        merchant_id: str,
        state: Optional[DispatchState] = None,
        limit: int = 100,
    ) -> list[Dispatch]:
        return self._dispatch_repo.list_for_merchant(merchant_id, state=state, limit=limit)

    def retry(
        self,
        merchant_id: str,
        dispatch_id: str,
        reset_attempts: bool = False,
    ) -> Dispatch:
        """Make a DEAD or RETRYING dispatch eligible immediately.

        ``attempt_count`` keeps accumulating against the same cap unless
        *reset_attempts* is set.

        Raises:
            NotFound: no such dispatch for this merchant.
            IllegalTransition: dispatch is not DEAD or RETRYING.
        """
        dispatch = self.get(merchant_id, dispatch_id)
        allowed = (DispatchState.DEAD, DispatchState.RETRYING)
        if dispatch.state not in allowed:
            raise IllegalTransition(
                f"Cannot retry dispatch {dispatch_id} in state {dispatch.state.value}"
            )

        fields: dict = {"next_attempt_at": None}
        if reset_attempts:
            fields["attempt_count"] = 0
        if not self._dispatch_repo.transition(
            dispatch_id, allowed, DispatchState.RETRYING, **fields,
        ):
            raise IllegalTransition(f"Dispatch {dispatch_id} changed state concurrently")

        logger.info(
            "Dispatch %s manually retried by operator (attempts %s)",
            dispatch_id, "reset" if reset_attempts else dispatch.attempt_count,
        )
        return self.get(merchant_id, dispatch_id)

    def cancel(self, merchant_id: str, dispatch_id: str) -> Dispatch:
        """Cancel a dispatch that has not started its attempt.

        A RUNNING dispatch only gets ``cancel_requested``: the in-flight
        venue call cannot be interrupted, and its outcome decides.

        Raises:
            NotFound: no such dispatch for this merchant.
            IllegalTransition: dispatch is already terminal.
        """
        dispatch = self.get(merchant_id, dispatch_id)
        cancellable = (DispatchState.PENDING, DispatchState.RETRYING)

        if dispatch.state in cancellable and not dispatch.ambiguous:
            if self._dispatch_repo.transition(
                dispatch_id, cancellable, DispatchState.CANCELLED,
                next_attempt_at=None,
            ):
                logger.info("Dispatch %s cancelled", dispatch_id)
                return self.get(merchant_id, dispatch_id)
            dispatch = self.get(merchant_id, dispatch_id)

        if dispatch.state == DispatchState.RUNNING or (
            dispatch.state == DispatchState.RETRYING and dispatch.ambiguous
        ):
            # Outcome unknown; let the next attempt resolve it first.
            self._dispatch_repo.transition(
                dispatch_id, [dispatch.state], dispatch.state, cancel_requested=True,
            )
            logger.info("Dispatch %s cancel requested (outcome pending)", dispatch_id)
            return self.get(merchant_id, dispatch_id)

        raise IllegalTransition(
            f"Cannot cancel dispatch {dispatch_id} in state {dispatch.state.value}"
        )

    # ── Execution ────────────────────────────────────────────────────────

    async def process(self, dispatch_id: str, now: Optional[datetime] = None) -> Dispatch:
        """Run one attempt of *dispatch_id*.

        Attempts for the same dispatch are strictly sequential.  Calling
        this on a dispatch that is not PENDING or RETRYING is a no-op.

        A dispatch waiting for its merchant's concurrency slot stays
        PENDING or RETRYING, so an operator can still cancel it outright.
        """
        lock = self._locks.setdefault(dispatch_id, asyncio.Lock())
        async with lock:
            dispatch = self._dispatch_repo.get(dispatch_id)
            if dispatch is None:
                raise NotFound(f"Dispatch {dispatch_id} not found")
            if dispatch.state not in RUNNABLE_DISPATCH_STATES:
                logger.debug(
                    "Dispatch %s is %s, nothing to do", dispatch_id, dispatch.state.value,
                )
                return dispatch

            semaphore = self._semaphores.setdefault(
                dispatch.merchant_id,
                asyncio.Semaphore(self._config.dispatch_concurrency_per_merchant),
            )
            async with semaphore:
                if not self._dispatch_repo.transition(
                    dispatch_id, RUNNABLE_DISPATCH_STATES, DispatchState.RUNNING,
                ):
                    current = self._dispatch_repo.get(dispatch_id)
                    logger.debug(
                        "Dispatch %s is %s, nothing to do", dispatch_id, current.state.value,
                    )
                    return current
                dispatch = self._dispatch_repo.get(dispatch_id)
                return await self._attempt(dispatch, now or datetime.now(timezone.utc))

    async def _attempt(self, dispatch: Dispatch, now: datetime) -> Dispatch:
        intent = parse_intent(dispatch.intent)
        client = self._clients[dispatch.merchant_id]

        try:
            if dispatch.ambiguous:
                order = await self._synchronizer.resolve_client_token(
                    dispatch.merchant_id,
                    dispatch.idempotency_token,
                    since=dispatch.created_at - _RESOLVE_SKEW,
                )
                if order is not None:
                    logger.info(
                        "Dispatch %s resolved to existing order %s",
                        dispatch.id, order.order_number,
                    )
                    return await self._succeed(dispatch, intent, order.order_number, now)
                if dispatch.cancel_requested:
                    return self._finish(
                        dispatch, DispatchState.CANCELLED,
                        "cancelled; venue holds no order for this token",
                        attempt_count=dispatch.attempt_count,
                    )
            elif dispatch.cancel_requested:
                return self._finish(
                    dispatch, DispatchState.CANCELLED, "cancelled before placement",
                    attempt_count=dispatch.attempt_count,
                )

            placed = await client.place_order(to_placement(intent, dispatch.idempotency_token))
        except DuplicateIntentRejected as exc:
            if dispatch.ambiguous:
                # The token was used; the order should appear on a later read.
                return self._schedule_retry(dispatch, exc, now, ambiguous=True)
            return self._finish(
                dispatch, DispatchState.DEAD, _describe(exc),
                attempt_count=dispatch.attempt_count + 1,
            )
        except VenueRejected as exc:
            return self._finish(
                dispatch, DispatchState.DEAD, _describe(exc),
                attempt_count=dispatch.attempt_count + 1,
            )
        except AmbiguousNetworkFailure as exc:
            return self._schedule_retry(dispatch, exc, now, ambiguous=True)
        except VenueError as exc:
            return self._schedule_retry(dispatch, exc, now, ambiguous=dispatch.ambiguous)

        return await self._succeed(dispatch, intent, placed.order_number, now)

    async def _succeed(self, dispatch: Dispatch, intent, order_number: str, now: datetime) -> Dispatch:
        if isinstance(intent, FiatAmountIntent):
            amount = (intent.fiat_amount / intent.price).quantize(_QUANTITY_STEP)
        else:
            amount = intent.quantity

        created = self._order_repo.insert_if_absent(
            Order(
                order_number=order_number,
                merchant_id=dispatch.merchant_id,
                status=OrderStatus.CREATED,
                side=Side.BUY,
                asset=intent.asset,
                fiat=intent.fiat,
                amount=amount,
                created_at=now,
                last_synced_at=now,
                client_token=dispatch.idempotency_token,
                dispatch_id=dispatch.id,
            )
        )
        if not created:
            self._order_repo.link_dispatch(order_number, dispatch.id, dispatch.idempotency_token)

        current = self._dispatch_repo.get(dispatch.id)
        if current is not None and current.cancel_requested:
            logger.warning(
                "Dispatch %s was cancel-requested but the venue placed order %s",
                dispatch.id, order_number,
            )

        self._dispatch_repo.transition(
            dispatch.id, [DispatchState.RUNNING], DispatchState.SUCCEEDED,
            order_number=order_number, last_error=None,
            next_attempt_at=None, ambiguous=False,
        )
        logger.info("Dispatch %s succeeded → order %s", dispatch.id, order_number)

        if self._sync_on_success:
            await self._synchronizer.sync_order(dispatch.merchant_id, order_number)
        return self._dispatch_repo.get(dispatch.id)

    def _schedule_retry(
        self,
        dispatch: Dispatch,
        exc: VenueError,
        now: datetime,
        ambiguous: bool,
    ) -> Dispatch:
        attempts = dispatch.attempt_count + 1
        error = _describe(exc)

        if attempts >= self._config.dispatch_max_attempts:
            return self._finish(
                dispatch, DispatchState.DEAD, error,
                attempt_count=attempts, ambiguous=ambiguous,
            )

        current = self._dispatch_repo.get(dispatch.id)
        if current is not None and current.cancel_requested and not ambiguous:
            return self._finish(
                dispatch, DispatchState.CANCELLED, error, attempt_count=attempts,
            )

        delay = backoff_delay(
            self._config.dispatch_backoff_base_seconds,
            attempts - 1,
            self._config.dispatch_backoff_cap_seconds,
            getattr(exc, "retry_after", None),
        )
        self._dispatch_repo.transition(
            dispatch.id, [DispatchState.RUNNING], DispatchState.RETRYING,
            attempt_count=attempts,
            last_error=error,
            next_attempt_at=now + timedelta(seconds=delay),
            ambiguous=ambiguous,
        )
        logger.warning(
            "Dispatch %s attempt %d/%d failed (%s) — retry in %.1fs",
            dispatch.id, attempts, self._config.dispatch_max_attempts, error, delay,
        )
        return self._dispatch_repo.get(dispatch.id)

    def _finish(
        self,
        dispatch: Dispatch,
        state: DispatchState,
        error: str,
        **fields,
    ) -> Dispatch:
        self._dispatch_repo.transition(
            dispatch.id, [DispatchState.RUNNING], state,
            last_error=error, next_attempt_at=None, **fields,
        )
        if state == DispatchState.DEAD:
            logger.error(
                "Dispatch %s DEAD after %d attempt(s): %s",
                dispatch.id, fields.get("attempt_count", dispatch.attempt_count), error,
            )
        else:
            logger.info("Dispatch %s %s: %s", dispatch.id, state.value, error)
        return self._dispatch_repo.get(dispatch.id)

    # ── Worker loop ──────────────────────────────────────────────────────

    def recover_interrupted(self) -> int:
        """Mark dispatches left RUNNING by a crash as ambiguous retries.

        Their placement call may have reached the venue, so the next
        attempt resolves the token before placing anything.
        """
        recovered = 0
        for dispatch in self._dispatch_repo.list_in_state(DispatchState.RUNNING):
            if self._dispatch_repo.transition(
                dispatch.id, [DispatchState.RUNNING], DispatchState.RETRYING,
                ambiguous=True, next_attempt_at=None,
                last_error="interrupted while running",
            ):
                recovered += 1
                logger.warning("Dispatch %s was RUNNING at startup, will resolve", dispatch.id)
        return recovered

    async def run(self, max_cycles: int = 0) -> None:
        """Poll for due dispatches and process them until stopped."""
        self._running = True
        self.recover_interrupted()
        cycle = 0

        while self._running:
            cycle += 1
            now = datetime.now(timezone.utc)
            for dispatch in self._dispatch_repo.list_due(now):
                if dispatch.id in self._inflight:
                    continue
                task = asyncio.create_task(self._process_tracked(dispatch.id))
                self._inflight[dispatch.id] = task

            if max_cycles > 0 and cycle >= max_cycles:
                break
            await asyncio.sleep(self._config.dispatch_poll_seconds)

        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        self._running = False

    async def _process_tracked(self, dispatch_id: str) -> None:
        try:
            await self.process(dispatch_id)
        except Exception:
            logger.exception("Dispatch %s — processing crashed", dispatch_id)
        finally:
            self._inflight.pop(dispatch_id, None)
            lock = self._locks.get(dispatch_id)
            if lock is not None and not lock.locked():
                self._locks.pop(dispatch_id, None)

    def stop(self) -> None:
        self._running = False


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"
