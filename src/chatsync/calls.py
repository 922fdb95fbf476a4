from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Set

from .hub import Subscription
from .models import (
    CALL_ACTIVE,
    CALL_AUDIO,
    CALL_DECLINED,
    CALL_ENDED,
    CALL_RINGING,
    CALL_VIDEO,
    CALLS,
    CallSession,
    call_path,
)
from .presence import PresenceManager
from .store import (
    SERVER_TIMESTAMP,
    DocumentNotFound,
    DocumentSnapshot,
    PreconditionFailed,
    Query,
    QuerySnapshot,
    RemoteStore,
    StoreError,
    set_field,
)

logger = logging.getLogger(__name__)

IDLE = "idle"
RINGING_OUTBOUND = "ringing-outbound"
RINGING_INBOUND = "ringing-inbound"
ACTIVE = "active"
ENDED = "ended"
CALL_STATES = (IDLE, RINGING_OUTBOUND, RINGING_INBOUND, ACTIVE, ENDED)


@dataclass(frozen=True)
class CallConfig:
    ring_timeout_s: float | None = None


class CallError(Exception):
    pass


class CallStateError(CallError):
    pass


class MediaAcquisitionError(CallError):
    pass


class PeerUnavailable(CallError):
    pass


class MediaSession(abc.ABC):
    """Local media layer: devices plus session-description negotiation."""

    @abc.abstractmethod
    async def acquire(self, kind: str) -> None:
        """Open local devices; raise :class:`MediaAcquisitionError` on failure."""

    @abc.abstractmethod
    async def create_offer(self) -> Any:
        pass

    @abc.abstractmethod
    async def create_answer(self, offer: Any) -> Any:
        pass

    @abc.abstractmethod
    async def apply_answer(self, answer: Any) -> None:
        pass

    @abc.abstractmethod
    async def release(self) -> None:
        pass


StateListener = Callable[[str, "CallSession | None"], None]


class CallSignalingEngine:
    """Drives one two-party call at a time through a shared session record.

    Termination is store driven: observing ``ended``/``declined`` or a deleted
    session tears the local side down exactly like ending it locally.
    """

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        media: MediaSession,
        *,
        presence: PresenceManager | None = None,
        config: CallConfig | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.media = media
        self.presence = presence
        self.config = config or CallConfig()
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self.state = IDLE
        self.session: CallSession | None = None
        self._listeners: List[StateListener] = []
        self._inbound_sub: Subscription | None = None
        self._session_sub: Subscription | None = None
        self._handled: Set[str] = set()
        self._pending_end: str | None = None
        self._media_held = False
        self._answer_applied = False
        self._ring_timer: asyncio.TimerHandle | None = None
        self._tasks: Set[asyncio.Task] = set()

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        logger.debug("call state %s -> %s for %s", self.state, state, self.user_id)
        self.state = state
        for listener in list(self._listeners):
            listener(state, self.session)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def busy(self) -> bool:
        return self.state in (RINGING_OUTBOUND, RINGING_INBOUND, ACTIVE)

    def listen(self) -> None:
        """Start surfacing inbound ringing sessions addressed to this user."""

        if self._inbound_sub is not None:
            return
        query = (
            Query(CALLS)
            .where("receiver_id", "==", self.user_id)
            .where("status", "==", CALL_RINGING)
            .ordered("created_at_ms")
        )
        self._inbound_sub = self.store.subscribe(query, self._on_inbound)

    def _on_inbound(self, snapshot: QuerySnapshot) -> None:
        # Sessions never return to ringing, so ids outside this set are done with.
        self._handled &= {doc.id for doc in snapshot}
        for doc in snapshot:
            session = CallSession.from_snapshot(doc)
            if session.call_id in self._handled or session.caller_id == self.user_id:
                continue
            self._handled.add(session.call_id)
            if self.busy:
                self._spawn(self._reject_busy(session.call_id))
                continue
            self.session = session
            self._answer_applied = False
            self._set_state(RINGING_INBOUND)
            self._watch(session.call_id)

    async def _reject_busy(self, call_id: str) -> None:
        try:
            await self.store.update(
                call_path(call_id),
                [set_field("status", CALL_DECLINED), set_field("reason", "busy")],
                when={"status": (CALL_RINGING,)},
            )
        except StoreError as exc:
            logger.debug("busy reject of %s skipped: %s", call_id, exc)

    def _watch(self, call_id: str) -> None:
        if self._session_sub is not None:
            self._session_sub.cancel()
        self._session_sub = self.store.subscribe_document(call_path(call_id), self._on_session)

    def _on_session(self, snapshot: DocumentSnapshot) -> None:
        session = self.session
        if session is None or snapshot.id != session.call_id or not self.busy:
            return
        if not snapshot.exists:
            self._finish()
            return
        current = CallSession.from_snapshot(snapshot)
        self.session = current
        if current.terminal:
            self._finish()
        elif current.status == CALL_ACTIVE and self.state == RINGING_OUTBOUND and current.answer is not None:
            if not self._answer_applied:
                self._answer_applied = True
                self._spawn(self._complete_outbound(current))

    async def _complete_outbound(self, session: CallSession) -> None:
        try:
            await self.media.apply_answer(session.answer)
        except Exception as exc:
            logger.warning("applying answer for %s failed: %s", session.call_id, exc)
            await self._end_quietly(session.call_id)
            return
        if self.state == RINGING_OUTBOUND and self.session is not None and self.session.call_id == session.call_id:
            self._set_state(ACTIVE)

    async def start_call(self, receiver_id: str, kind: str = CALL_AUDIO) -> CallSession:
        if self.busy:
            raise CallStateError(f"cannot start a call while {self.state}")
        if self._pending_end is not None:
            await self._end_quietly(self._pending_end)
        if receiver_id == self.user_id:
            raise ValueError("cannot call yourself")
        if kind not in (CALL_AUDIO, CALL_VIDEO):
            raise ValueError(f"unknown call kind: {kind}")
        if self.presence is not None:
            try:
                peer = await self.presence.lookup(receiver_id)
            except StoreError as exc:
                raise PeerUnavailable(f"cannot resolve {receiver_id}") from exc
            if peer is None:
                raise PeerUnavailable(f"unknown user {receiver_id}")
        await self.media.acquire(kind)
        self._media_held = True
        call_id = self._new_id()
        try:
            offer = await self.media.create_offer()
            await self.store.create(
                call_path(call_id),
                {
                    "caller_id": self.user_id,
                    "receiver_id": receiver_id,
                    "status": CALL_RINGING,
                    "kind": kind,
                    "offer": offer,
                    "answer": None,
                    "created_at_ms": SERVER_TIMESTAMP,
                },
            )
        except Exception:
            await self._release_media()
            self._set_state(IDLE)
            raise
        self.session = CallSession(
            call_id=call_id,
            caller_id=self.user_id,
            receiver_id=receiver_id,
            status=CALL_RINGING,
            kind=kind,
            offer=offer,
        )
        self._answer_applied = False
        self._set_state(RINGING_OUTBOUND)
        self._watch(call_id)
        self._start_ring_timer(call_id)
        return self.session

    def _start_ring_timer(self, call_id: str) -> None:
        if not self.config.ring_timeout_s or self.state != RINGING_OUTBOUND:
            return
        loop = asyncio.get_running_loop()

        def expire() -> None:
            self._ring_timer = None
            if self.state == RINGING_OUTBOUND and self.session is not None and self.session.call_id == call_id:
                logger.info("call %s unanswered after %ss", call_id, self.config.ring_timeout_s)
                self._spawn(self._end_quietly(call_id))

        self._ring_timer = loop.call_later(self.config.ring_timeout_s, expire)

    async def accept(self) -> CallSession:
        if self.state != RINGING_INBOUND or self.session is None:
            raise CallStateError(f"no inbound call to accept ({self.state})")
        session = self.session
        try:
            await self.media.acquire(session.kind)
        except MediaAcquisitionError:
            self._stop_watching()
            self.session = None
            self._set_state(IDLE)
            raise
        self._media_held = True
        try:
            answer = await self.media.create_answer(session.offer)
            await self.store.update(
                call_path(session.call_id),
                [set_field("answer", answer), set_field("status", CALL_ACTIVE)],
                when={"status": (CALL_RINGING,)},
            )
        except PreconditionFailed as exc:
            self._finish()
            await self._release_media()
            raise CallStateError(f"call {session.call_id} is no longer ringing") from exc
        except Exception:
            self._pending_end = session.call_id
            self._finish()
            await self._release_media()
            await self._end_quietly(session.call_id)
            raise
        if self.state != RINGING_INBOUND:
            # The session ended while the answer was in flight.
            await self._release_media()
            raise CallStateError(f"call {session.call_id} ended before it was accepted")
        self.session = replace(self.session or session, answer=answer, status=CALL_ACTIVE)
        self._set_state(ACTIVE)
        return self.session

    async def decline(self) -> None:
        if self.state != RINGING_INBOUND or self.session is None:
            raise CallStateError(f"no inbound call to decline ({self.state})")
        call_id = self.session.call_id
        self._finish()
        try:
            await self.store.update(
                call_path(call_id), [set_field("status", CALL_DECLINED)], when={"status": (CALL_RINGING,)}
            )
        except (DocumentNotFound, PreconditionFailed):
            pass
        except StoreError:
            self._pending_end = call_id
            raise

    async def hang_up(self) -> None:
        """End the current call on both sides.

        Local teardown happens first. If the terminal write fails it stays
        pending and the next call to this method, or :meth:`close`, re-issues
        it. A no-op when nothing is in progress or pending.
        """

        if self.busy and self.session is not None:
            self._pending_end = self.session.call_id
            self._finish()
            await self._release_media()
        call_id = self._pending_end
        if call_id is None:
            return
        try:
            await self.store.update(
                call_path(call_id),
                [set_field("status", CALL_ENDED)],
                when={"status": (CALL_RINGING, CALL_ACTIVE)},
            )
        except (DocumentNotFound, PreconditionFailed):
            pass
        if self._pending_end == call_id:
            self._pending_end = None

    @property
    def end_pending(self) -> bool:
        return self._pending_end is not None

    async def _end_quietly(self, call_id: str) -> None:
        try:
            await self.hang_up()
        except StoreError as exc:
            logger.warning("ending call %s failed: %s", call_id, exc)

    def _stop_watching(self) -> None:
        if self._ring_timer is not None:
            self._ring_timer.cancel()
            self._ring_timer = None
        if self._session_sub is not None:
            self._session_sub.cancel()
            self._session_sub = None

    def _finish(self) -> None:
        self._stop_watching()
        if self.session is not None and not self.session.terminal:
            self.session = replace(self.session, status=CALL_ENDED)
        self._set_state(ENDED)
        if self._media_held:
            self._spawn(self._release_media())

    async def _release_media(self) -> None:
        if not self._media_held:
            return
        self._media_held = False
        try:
            await self.media.release()
        except Exception as exc:
            logger.warning("media release failed: %s", exc)

    def reset(self) -> None:
        if self.busy:
            raise CallStateError("cannot reset during a call")
        self.session = None
        self._set_state(IDLE)

    async def close(self) -> None:
        try:
            await self.hang_up()
        except StoreError as exc:
            logger.warning("hang up on close failed: %s", exc)
        if self._inbound_sub is not None:
            self._inbound_sub.cancel()
            self._inbound_sub = None
        self._stop_watching()
        await self.drain()
