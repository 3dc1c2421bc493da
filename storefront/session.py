import logging
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase

from shared.utils import settings
from storefront.cart import CartEngine
from storefront.checkout import CheckoutFlow, OrderWriter
from storefront.clients import CachedIdentity, HttpChargeAuthorizer, PrimaryApiClient, PrimaryApiOrders
from storefront.models import OrderHistory
from storefront.notices import Notifier, log_notice
from storefront.orders import OrderAggregator, filter_by_status
from storefront.stores import MongoCartStore, MongoOrderCollection, MongoUserOrders, SqliteCache

logger = logging.getLogger(__name__)


class StorefrontSession:
    """
    One shopper's context: identity, cart, checkout and order history.
    Built explicitly and handed to whatever needs it.
    """

    def __init__(
        self,
        session_id: str,
        local_cache,
        remote_cart_store,
        order_sources: Sequence,
        api: PrimaryApiClient,
        charge=None,
        notify: Notifier = log_notice,
    ):
        self.session_id = session_id
        self.local_cache = local_cache
        self.identity = CachedIdentity(local_cache)
        self.api = api
        self.notify = notify
        self.cart = CartEngine(
            local_cache, remote_cart_store,
            identity=self.identity.current_subject_id(), notify=notify,
        )
        self.orders = OrderAggregator(order_sources)
        self.writer = OrderWriter(api)
        self.charge = charge or HttpChargeAuthorizer(api)
        self.checkout = self.new_checkout()
        self.started = False

    def new_checkout(self) -> CheckoutFlow:
        self.checkout = CheckoutFlow(self.cart, self.charge, self.writer, self.identity, self.notify)
        return self.checkout

    async def start(self) -> None:
        await self.cart.load()
        self.started = True

    async def attach(self, subject_id: Optional[str]) -> None:
        """Bring the session in line with the subject presented on this request."""
        if subject_id:
            self.identity.sign_in(subject_id)
        else:
            self.identity.sign_out()

        if not self.started:
            self.cart.identity = subject_id
            await self.start()
        elif self.cart.identity != subject_id:
            logger.info("Identity changed, reloading cart", extra={"session_id": self.session_id, "user_id": subject_id})
            await self.cart.switch_identity(subject_id)
            self.new_checkout()

    async def order_history(self, status: str = "all") -> OrderHistory:
        history = await self.orders.fetch(self.identity.current_subject_id())
        history.orders = filter_by_status(history.orders, status)
        return history

    async def close(self) -> None:
        await self.cart.flush()


def build_session(
    session_id: str,
    db: AsyncIOMotorDatabase,
    authorization: Optional[str] = None,
    cache_path: str = settings.LOCAL_CACHE_PATH,
    notify: Notifier = log_notice,
) -> StorefrontSession:
    api = PrimaryApiClient(authorization=authorization)
    return StorefrontSession(
        session_id=session_id,
        local_cache=SqliteCache(cache_path, namespace=session_id),
        remote_cart_store=MongoCartStore(db),
        order_sources=[MongoOrderCollection(db), MongoUserOrders(db), PrimaryApiOrders(api)],
        api=api,
        notify=notify,
    )


class SessionRegistry:
    """
    Live sessions keyed by X-Session-ID.

    Holds at most ``max_sessions``; the least recently used goes first, and
    any session idle for ``idle_seconds`` is dropped on the next lookup.
    Dropped sessions are flushed. Their cart stays in the local cache, so a
    returning session id is rebuilt from it.
    """

    def __init__(
        self,
        max_sessions: int = settings.MAX_SESSIONS,
        idle_seconds: float = settings.SESSION_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_sessions = max_sessions
        self.idle_seconds = idle_seconds
        self.clock = clock
        self._sessions = OrderedDict()  # session_id -> (session, last_used)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def get_or_create(self, session_id: str, build: Callable[[], StorefrontSession]) -> StorefrontSession:
        now = self.clock()
        evicted = self._expire(now)

        entry = self._sessions.pop(session_id, None)
        session = entry[0] if entry else build()
        self._sessions[session_id] = (session, now)

        while len(self._sessions) > self.max_sessions:
            _, (oldest, _) = self._sessions.popitem(last=False)
            evicted.append(oldest)

        for stale in evicted:
            await self._close(stale)
        return session

    def _expire(self, now: float) -> List[StorefrontSession]:
        expired = []
        for session_id, (session, last_used) in list(self._sessions.items()):
            if now - last_used < self.idle_seconds:
                # Ordered by last use, everything after is fresher
                break
            del self._sessions[session_id]
            expired.append(session)
        return expired

    async def _close(self, session: StorefrontSession) -> None:
        try:
            await session.close()
        except Exception:
            logger.warning("Failed to close session", extra={"session_id": session.session_id}, exc_info=True)
        else:
            logger.info("Session closed", extra={"session_id": session.session_id})

    async def close_all(self) -> None:
        sessions = [session for session, _ in self._sessions.values()]
        self._sessions.clear()
        for session in sessions:
            await self._close(session)
