"""Save-state coordination for one script editing session."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .hashing import content_hash
from .remote import RemoteSave, RemoteSaveResult, coerce_result
from .scheduler import Scheduler, ScheduledTask, ThreadingScheduler
from .status import SaveState, SaveStatus
from .storage import EpisodeKey, RevisionEntry, RevisionStore, normalize_episode_key, now_ms

LOGGER = logging.getLogger(__name__)

Listener = Callable[[SaveState], None]

# Save request kinds
AUTOSAVE = "autosave"
OVERWRITE = "overwrite"
RESTORE = "restore"


class ConfigurationError(Exception):
    """Raised when a coordinator is built without a required collaborator."""


class SessionClosedError(RuntimeError):
    """Raised when a closed session is used."""


def hash_divergence(
    remote_hash: Optional[str], last_saved_hash: Optional[str], issued_hash: str
) -> bool:
    """True if the remote changed since this session last saw it."""
    if remote_hash is None:
        return False
    return remote_hash != last_saved_hash and remote_hash != issued_hash


@dataclass
class CoordinatorConfig:
    debounce_seconds: float = 2.0
    # One delay per automatic retry; empty disables retries.
    retry_backoff: Tuple[float, ...] = (1.0, 2.0, 4.0)
    snapshot_on_error: bool = True
    snapshot_on_close: bool = True
    divergence_check: Callable[[Optional[str], Optional[str], str], bool] = hash_divergence


@dataclass
class _SaveRequest:
    content: str
    content_hash: str
    kind: str


class SaveCoordinator:
    """
    Decides when a script is persisted remotely and tracks the outcome.

    All state changes happen under one re-entrant lock, so edits from the
    caller, timer callbacks and save completions from the executor are
    serialized. At most one remote save is in flight; requests made while
    one is outstanding are folded into a single follow-up.
    """

    def __init__(
        self,
        project_id: str,
        episode_key: EpisodeKey,
        *,
        remote_save: Optional[RemoteSave],
        revisions: Optional[RevisionStore],
        config: Optional[CoordinatorConfig] = None,
        scheduler: Optional[Scheduler] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], int] = now_ms,
    ):
        if remote_save is None or not callable(remote_save):
            raise ConfigurationError("remote_save must be a callable")
        if revisions is None:
            raise ConfigurationError("a RevisionStore is required")
        if not project_id:
            raise ConfigurationError("project_id is required")
        try:
            self.episode_key = normalize_episode_key(episode_key)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        self.config = config or CoordinatorConfig()
        if self.config.debounce_seconds < 0 or any(d < 0 for d in self.config.retry_backoff):
            raise ConfigurationError("debounce and retry delays must be non-negative")

        self.project_id = project_id
        self._remote_save = remote_save
        self._revisions = revisions
        self._scheduler = scheduler or ThreadingScheduler()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="autosave"
        )
        self._clock = clock

        self._lock = threading.RLock()
        self._state = SaveState()
        self._pending = False
        self._remote_content = ""
        self._conflict_applied = False
        self._conflict_issued: Optional[str] = None
        self._in_flight: Optional[_SaveRequest] = None
        self._follow_up: Optional[str] = None
        self._retry_kind = AUTOSAVE
        self._debounce_task: Optional[ScheduledTask] = None
        self._retry_task: Optional[ScheduledTask] = None
        self._timer_generation = 0
        self._listeners: list[Listener] = []
        self._closed = False

    def __enter__(self) -> SaveCoordinator:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # Read side

    @property
    def status(self) -> SaveStatus:
        return self._state.status

    @property
    def state(self) -> SaveState:
        """A copy of the current save state."""
        with self._lock:
            return self._state.copy()

    @property
    def buffer(self) -> str:
        """Content the editor should display."""
        with self._lock:
            return self._state.pending_content if self._pending else self._remote_content

    @property
    def draft(self) -> Optional[RevisionEntry]:
        return self._state.draft

    @property
    def remote_content(self) -> str:
        """Last content known to be on the remote record."""
        return self._remote_content

    @property
    def saving(self) -> bool:
        """True while a remote save is in flight."""
        return self._in_flight is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener with a state copy on every change. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # Session lifecycle

    def open(self, remote_content: str, remote_updated_at: Optional[int] = None) -> SaveStatus:
        """
        Start the session from freshly loaded remote content.

        A revision newer than remote_updated_at (any revision, when that is
        unknown) whose content differs from the remote content is offered as
        a recoverable draft.
        """
        with self._lock:
            self._ensure_open()
            self._cancel_timers()
            state = self._state
            remote_hash = content_hash(remote_content)

            self._remote_content = remote_content
            self._pending = False
            state.pending_content = ""
            state.last_saved_content_hash = remote_hash
            state.attempts = 0
            state.last_error = None
            self._clear_conflict()

            candidate = self._revisions.latest(self.project_id, self.episode_key)
            is_draft = (
                candidate is not None
                and candidate.content is not None
                and candidate.content_hash != remote_hash
                and (remote_updated_at is None or candidate.created_at > remote_updated_at)
            )
            state.last_remote_seen_at = (
                remote_updated_at if remote_updated_at is not None else self._clock()
            )

            if is_draft:
                state.draft = candidate
                LOGGER.info(
                    "Recovered draft %s for %s/%s (%d chars)",
                    candidate.id,
                    self.project_id,
                    self.episode_key,
                    candidate.length,
                )
                self._set_status(SaveStatus.DRAFT)
            else:
                state.draft = None
                self._set_status(SaveStatus.IDLE)
            return state.status

    def close(self) -> None:
        """
        Tear down the session.

        An in-flight save is not cancelled; its result is ignored except that
        a successful save is still recorded in the revision store.
        """
        with self._lock:
            if self._closed:
                return
            self._cancel_timers()
            if self.config.snapshot_on_close and self._pending:
                self._snapshot(self._state.pending_content)
            self._closed = True
            self._listeners.clear()
            LOGGER.debug("Closed session %s/%s", self.project_id, self.episode_key)
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # Edits and user actions

    def edit(self, content: str) -> None:
        """Record new editor content and restart the quiescence timer."""
        with self._lock:
            self._ensure_open()
            state = self._state
            state.pending_content = content
            self._pending = True
            state.draft = None
            state.attempts = 0
            self._retry_kind = AUTOSAVE
            self._clear_conflict()
            self._cancel_retry()
            self._set_status(SaveStatus.DIRTY)
            self._schedule_debounce()

    def force_save(self) -> None:
        """Save now; in conflict, overwrite the remote record unconditionally."""
        with self._lock:
            self._ensure_open()
            status = self._state.status
            if status == SaveStatus.CONFLICT:
                LOGGER.info("Overwriting remote script for %s/%s", self.project_id, self.episode_key)
                self._request_save(OVERWRITE)
            elif status in (SaveStatus.DIRTY, SaveStatus.ERROR, SaveStatus.SAVING):
                self._cancel_timers()
                self._state.attempts = 0
                kind = self._retry_kind if status == SaveStatus.ERROR else AUTOSAVE
                self._request_save(kind)
            else:
                LOGGER.debug("force_save ignored while %s", status)

    def discard(self) -> None:
        """Drop local content in favour of the remote version, or drop a draft offer."""
        with self._lock:
            self._ensure_open()
            state = self._state
            if state.status == SaveStatus.CONFLICT:
                self._discard_conflict()
            elif state.status == SaveStatus.DRAFT:
                LOGGER.info("Discarded draft for %s/%s", self.project_id, self.episode_key)
                state.draft = None
                self._set_status(SaveStatus.IDLE)
            else:
                LOGGER.debug("discard ignored while %s", state.status)

    def apply_draft(self) -> None:
        """Adopt the recovered draft as pending content."""
        with self._lock:
            self._ensure_open()
            state = self._state
            if state.status != SaveStatus.DRAFT or state.draft is None:
                LOGGER.debug("apply_draft ignored while %s", state.status)
                return
            draft = state.draft
            state.draft = None
            state.pending_content = draft.content or ""
            self._pending = True
            LOGGER.info("Applied draft %s for %s/%s", draft.id, self.project_id, self.episode_key)
            self._set_status(SaveStatus.DIRTY)
            self._schedule_debounce()

    # Save path

    def _request_save(self, kind: str) -> None:
        if self._in_flight is not None:
            if self._follow_up != OVERWRITE:
                self._follow_up = kind
            LOGGER.debug("Save in flight for %s/%s; queued %s", self.project_id, self.episode_key, kind)
            return

        state = self._state
        if not self._pending:
            return
        digest = content_hash(state.pending_content)
        if kind == AUTOSAVE and digest == state.last_saved_content_hash:
            LOGGER.debug("Content unchanged since last save; not sending")
            self._clear_pending()
            self._set_status(SaveStatus.SAVED)
            return
        self._issue(_SaveRequest(state.pending_content, digest, kind))

    def _issue(self, request: _SaveRequest) -> None:
        self._in_flight = request
        if request.kind != RESTORE:
            self._set_status(SaveStatus.SAVING)
        LOGGER.debug(
            "Saving %s/%s (%s, %d chars)",
            self.project_id,
            self.episode_key,
            request.kind,
            len(request.content),
        )
        future = self._executor.submit(
            self._remote_save, self.project_id, self.episode_key, request.content
        )
        future.add_done_callback(lambda done: self._on_save_done(request, done))

    def _on_save_done(self, request: _SaveRequest, future: Future) -> None:
        result = self._result_of(future)
        with self._lock:
            self._in_flight = None
            if self._closed:
                if result.ok:
                    self._revisions.record(self.project_id, self.episode_key, request.content)
                LOGGER.debug("Session closed; ignoring %s result", request.kind)
                return
            self._handle_result(request, result)
            self._drain_follow_up()

    def _result_of(self, future: Future) -> RemoteSaveResult:
        exc = future.exception()
        if exc is None:
            try:
                return coerce_result(future.result())
            except TypeError as e:
                exc = e
        LOGGER.warning("Remote save for %s/%s raised: %s", self.project_id, self.episode_key, exc)
        return RemoteSaveResult.failure(f"{type(exc).__name__}: {exc}")

    def _handle_result(self, request: _SaveRequest, result: RemoteSaveResult) -> None:
        state = self._state
        edited_since = self._pending and content_hash(state.pending_content) != request.content_hash

        if request.kind == AUTOSAVE and self.config.divergence_check(
            result.remote_content_hash, state.last_saved_content_hash, request.content_hash
        ):
            self._enter_conflict(request, result)
            return

        if result.ok:
            self._mark_persisted(request)
            if request.kind == RESTORE or edited_since:
                return
            self._clear_pending()
            self._clear_conflict()
            self._set_status(SaveStatus.SAVED)
            return

        state.last_error = result.reason or "save failed"
        if request.kind == RESTORE and not self._pending:
            state.pending_content = request.content
            self._pending = True
        if edited_since:
            # the debounce timer or a queued follow-up covers the newer content
            return
        self._retry_kind = OVERWRITE if request.kind == OVERWRITE else AUTOSAVE
        self._schedule_retry_or_fail()

    def _mark_persisted(self, request: _SaveRequest) -> None:
        state = self._state
        state.last_saved_content_hash = request.content_hash
        state.last_remote_seen_at = self._clock()
        state.attempts = 0
        state.last_error = None
        self._remote_content = request.content
        entry = self._revisions.record(self.project_id, self.episode_key, request.content)
        LOGGER.debug(
            "Saved %s/%s (%s)%s",
            self.project_id,
            self.episode_key,
            request.kind,
            f", revision {entry.id}" if entry else "",
        )

    def _enter_conflict(self, request: _SaveRequest, result: RemoteSaveResult) -> None:
        state = self._state
        LOGGER.warning(
            "Remote script for %s/%s changed elsewhere (remote %s, last saved %s)",
            self.project_id,
            self.episode_key,
            result.remote_content_hash,
            state.last_saved_content_hash,
        )
        state.conflict_remote_hash = result.remote_content_hash
        state.conflict_remote_content = result.remote_content
        self._conflict_applied = result.ok
        self._conflict_issued = request.content
        if result.ok:
            # the write landed, so the remote now holds the issued content
            state.last_saved_content_hash = request.content_hash
            state.last_remote_seen_at = self._clock()
        self._follow_up = None
        self._cancel_timers()
        self._set_status(SaveStatus.CONFLICT)

    def _discard_conflict(self) -> None:
        state = self._state
        remote = state.conflict_remote_content
        applied = self._conflict_applied
        if remote is not None:
            remote_hash = state.conflict_remote_hash or content_hash(remote)
        elif applied:
            # the replaced version was not reported and cannot be written back;
            # the record now holds what this session sent
            LOGGER.warning(
                "Remote version of %s/%s is unknown; keeping the applied write",
                self.project_id,
                self.episode_key,
            )
            remote = self._conflict_issued or ""
            remote_hash = content_hash(remote)
            applied = False
        else:
            remote = self._remote_content
            remote_hash = state.conflict_remote_hash or content_hash(remote)

        LOGGER.info("Discarded local changes for %s/%s", self.project_id, self.episode_key)
        self._remote_content = remote
        self._clear_pending()
        self._clear_conflict()
        state.attempts = 0
        state.last_error = None
        if not applied:
            state.last_saved_content_hash = remote_hash
            state.last_remote_seen_at = self._clock()
        self._set_status(SaveStatus.IDLE)

        if applied:
            # our write replaced the remote version; put it back
            if self._in_flight is not None:
                self._follow_up = RESTORE
            else:
                self._issue(_SaveRequest(remote, content_hash(remote), RESTORE))

    def _drain_follow_up(self) -> None:
        kind, self._follow_up = self._follow_up, None
        if kind is None:
            return
        if kind == RESTORE:
            self._issue(_SaveRequest(self._remote_content, content_hash(self._remote_content), RESTORE))
        elif self._state.status == SaveStatus.DIRTY:
            self._cancel_debounce()
            self._request_save(kind)

    def _schedule_retry_or_fail(self) -> None:
        state = self._state
        state.attempts += 1
        backoff = self.config.retry_backoff
        if state.attempts <= len(backoff):
            delay = backoff[state.attempts - 1]
            LOGGER.warning(
                "Save of %s/%s failed (%s); retry %d/%d in %.1fs",
                self.project_id,
                self.episode_key,
                state.last_error,
                state.attempts,
                len(backoff),
                delay,
            )
            self._set_status(SaveStatus.ERROR)
            generation = self._timer_generation
            self._retry_task = self._scheduler.call_later(
                delay, lambda: self._on_retry(generation)
            )
            return

        LOGGER.error(
            "Save of %s/%s failed after %d attempts: %s",
            self.project_id,
            self.episode_key,
            state.attempts,
            state.last_error,
        )
        self._set_status(SaveStatus.ERROR)
        if self.config.snapshot_on_error:
            self._snapshot(state.pending_content)

    def _on_retry(self, generation: int) -> None:
        with self._lock:
            if self._closed or generation != self._timer_generation:
                return
            self._retry_task = None
            if self._state.status == SaveStatus.ERROR:
                self._request_save(self._retry_kind)

    def _schedule_debounce(self) -> None:
        self._cancel_timers()
        generation = self._timer_generation
        self._debounce_task = self._scheduler.call_later(
            self.config.debounce_seconds, lambda: self._on_debounce(generation)
        )

    def _on_debounce(self, generation: int) -> None:
        with self._lock:
            if self._closed or generation != self._timer_generation:
                return
            self._debounce_task = None
            if self._state.status == SaveStatus.DIRTY:
                self._request_save(AUTOSAVE)

    # Helpers

    def _cancel_debounce(self) -> None:
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None

    def _cancel_retry(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None

    def _cancel_timers(self) -> None:
        self._timer_generation += 1
        self._cancel_debounce()
        self._cancel_retry()

    def _clear_pending(self) -> None:
        self._pending = False
        self._state.pending_content = ""

    def _clear_conflict(self) -> None:
        self._state.conflict_remote_content = None
        self._state.conflict_remote_hash = None
        self._conflict_applied = False
        self._conflict_issued = None

    def _snapshot(self, content: str) -> None:
        entry = self._revisions.record(self.project_id, self.episode_key, content)
        if entry is not None:
            LOGGER.info(
                "Kept unsaved content for %s/%s as revision %s",
                self.project_id,
                self.episode_key,
                entry.id,
            )

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError(f"Session {self.project_id}/{self.episode_key} is closed")

    def _set_status(self, status: SaveStatus) -> None:
        self._state.status = status
        snapshot = self._state.copy()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                LOGGER.exception("Save state listener failed")
