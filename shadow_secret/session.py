"""
Session Controller: Unlock, wait, restore.

States::

    Idle → Loading → Unlocked → Restoring → Locked
              ↘          ↘
               Error ←────┘ (vault failure / injection failure + rollback)

A session owns its Secret Store, its ordered Targets and its Backup
Registry; nothing is shared between sessions. Termination triggers (user
confirmation, SIGINT/SIGTERM/SIGHUP, interpreter exit, leaving a ``with``
block) all fire the same single-slot TerminationTrigger; the controller
then runs the Restoring transition once, on its own thread of execution.

Signal handlers never restore files themselves. While a caller blocks in
``wait_and_restore()`` a signal only sets the trigger. With no waiter, the
handler also raises ``SystemExit(128 + signum)`` so the caller unwinds
through ``__exit__``/atexit, which run the same Restoring transition.
Signals arriving while a restore or rollback holds the session lock are
ignored.
"""
import atexit
import signal
import logging
import threading
from enum import Enum
from typing import Callable, Iterable, Optional

from .backup import BackupRegistry, RestoreResult
from .exceptions import InjectionError, VaultError
from .injector import InjectionResult, inject_target
from .vault.config import EngineConfig, Target, VaultRef
from .vault.loader import VaultLoader
from .vault.store import SecretStore

logger = logging.getLogger("shadow_secret.session")

_POLL_INTERVAL = 0.5

Loader = Callable[[VaultRef], SecretStore]


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    UNLOCKED = "unlocked"
    RESTORING = "restoring"
    LOCKED = "locked"
    ERROR = "error"


TERMINAL_STATES = frozenset({SessionState.LOCKED, SessionState.ERROR})


def _termination_signals() -> list[signal.Signals]:
    signums = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGHUP"):
        signums.append(signal.SIGHUP)
    return signums


class TerminationTrigger:
    """Single-slot notification that a session should end.

    Only the first ``fire()`` is recorded; later ones are ignored. Safe
    to call from a signal handler or another thread.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def fire(self, reason: str) -> bool:
        """Record ``reason`` and wake the waiter. False if already fired."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason


def press_enter(prompt: str = "Press Enter to lock secrets and restore files...") -> bool:
    """Interactive confirmation: block until Enter. False on closed stdin."""
    try:
        input(prompt)
    except EOFError:
        return False
    return True


class Session:
    """One unlock-to-restore lifecycle.

    Args:
        vault_ref: Resolved vault to decrypt.
        targets: Target files, injected strictly in this order.
        config: Decrypt tool settings (ignored when ``loader`` is given).
        loader: Callable returning a SecretStore for a VaultRef.
    """

    def __init__(
        self,
        vault_ref: VaultRef,
        targets: Iterable[Target],
        config: Optional[EngineConfig] = None,
        loader: Optional[Loader] = None,
    ):
        self.vault_ref = vault_ref
        self.targets: list[Target] = list(targets)
        self.loader: Loader = loader or VaultLoader(config).load_ref
        self.registry = BackupRegistry()
        self.trigger = TerminationTrigger()
        self.store: Optional[SecretStore] = None
        self.results: list[InjectionResult] = []
        self.restore_result: Optional[RestoreResult] = None
        self._state = SessionState.IDLE
        self._lock = threading.Lock()
        self._waiting = False
        self._previous_handlers: dict = {}

    def __repr__(self) -> str:
        return f"<Session [{self._state.value}] targets={len(self.targets)}>"

    @property
    def state(self) -> SessionState:
        return self._state

    def _transition(self, state: SessionState) -> None:
        logger.debug("Session %s -> %s", self._state.value, state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Termination hooks
    # ------------------------------------------------------------------

    def _on_signal(self, signum, frame) -> None:
        self.trigger.fire(signal.Signals(signum).name)
        if self._waiting or self._lock.locked():
            return
        if self._state in (SessionState.LOADING, SessionState.UNLOCKED):
            raise SystemExit(128 + signum)

    def _install_hooks(self) -> None:
        atexit.register(self._on_exit)
        if threading.current_thread() is not threading.main_thread():
            logger.warning(
                "Session opened outside the main thread; signals will not end it"
            )
            return
        for signum in _termination_signals():
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _remove_hooks(self) -> None:
        atexit.unregister(self._on_exit)
        while self._previous_handlers:
            signum, handler = self._previous_handlers.popitem()
            # None means the handler was not installed from Python
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)

    def _on_exit(self) -> None:
        if self._state is SessionState.UNLOCKED:
            self.restore("exit")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Run Loading and Unlocked entry actions.

        Raises:
            VaultError: Vault could not be loaded; no file was touched.
            InjectionError: A target failed; every target touched so far
                has been restored (see ``err.rollback``).
        """
        if self._state is not SessionState.IDLE:
            raise RuntimeError(f"Session already {self._state.value}")
        self._install_hooks()
        self._transition(SessionState.LOADING)
        try:
            self.store = self.loader(self.vault_ref)
        except VaultError as err:
            logger.error("Vault load failed (%s): %s", err.kind, err)
            self._fail()
            raise
        except BaseException:
            self._fail()
            raise

        self._transition(SessionState.UNLOCKED)
        try:
            for target in self.targets:
                self.results.append(inject_target(target, self.store, self.registry))
        except InjectionError as err:
            logger.error("%s; rolling back", err)
            err.rollback = self._fail()
            raise
        except BaseException:
            self._fail()
            raise
        logger.info(
            "Session unlocked: %d target(s), %d placeholder(s) replaced",
            len(self.results), sum(r.replaced for r in self.results),
        )

    def _teardown(self) -> RestoreResult:
        result = self.registry.restore_all()
        if self.store is not None:
            self.store.purge()
        if result.ok:
            self.registry.clear()
        self.restore_result = result
        self._remove_hooks()
        return result

    def _fail(self) -> RestoreResult:
        """Best-effort rollback into the Error state."""
        with self._lock:
            result = self._teardown()
            self._transition(SessionState.ERROR)
        if not result.ok:
            logger.error(
                "Rollback left %d file(s) unrestored: %s",
                len(result.failed), ", ".join(map(str, result.failed_paths)),
            )
        return result

    def restore(self, reason: Optional[str] = None) -> RestoreResult:
        """The Restoring transition. Runs at most once per session.

        Args:
            reason: Trigger reason to record before restoring, if the
                trigger has not fired yet.
        """
        if not self._lock.acquire(blocking=False):
            logger.debug("Restore already in progress; ignoring trigger")
            return self.restore_result or RestoreResult()
        try:
            if reason is not None:
                self.trigger.fire(reason)
            if self._state is not SessionState.UNLOCKED:
                return self.restore_result or RestoreResult()
            logger.info("Locking session (trigger: %s)", self.trigger.reason or "direct")
            self._transition(SessionState.RESTORING)
            result = self._teardown()
            self._transition(SessionState.LOCKED)
        finally:
            self._lock.release()

        if result.ok:
            logger.info("Session locked: %d file(s) restored", len(result.restored))
        else:
            logger.error(
                "Session locked with %d unrestored file(s): %s",
                len(result.failed), ", ".join(map(str, result.failed_paths)),
            )
        return result

    def wait_and_restore(
        self,
        confirm: Optional[Callable[[], bool]] = None,
        poll_interval: float = _POLL_INTERVAL,
    ) -> RestoreResult:
        """Block until the termination trigger fires, then restore.

        Signals received from here until the restore finishes only set
        the trigger.
        """
        trigger = self.trigger
        self._waiting = True
        try:
            if confirm is not None and not trigger.fired:
                def _confirm() -> None:
                    if confirm():
                        trigger.fire("user")

                threading.Thread(
                    target=_confirm, name="shadow-secret-confirm", daemon=True,
                ).start()

            while not trigger.wait(poll_interval):
                pass
            return self.restore()
        finally:
            self._waiting = False

    @classmethod
    def unlock(
        cls,
        vault_ref: VaultRef,
        targets: Iterable[Target],
        config: Optional[EngineConfig] = None,
        *,
        loader: Optional[Loader] = None,
    ) -> "SessionHandle":
        """Load the vault, inject every target and return a handle.

        Raises:
            VaultError: Vault could not be loaded.
            InjectionError: A target failed and the session rolled back.
        """
        session = cls(vault_ref, targets, config=config, loader=loader)
        session.open()
        return SessionHandle(session)


class SessionHandle:
    """Caller-facing handle to an unlocked session."""

    def __init__(self, session: Session):
        self._session = session

    def __repr__(self) -> str:
        return f"<SessionHandle {self._session!r}>"

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def results(self) -> list[InjectionResult]:
        return list(self._session.results)

    @property
    def warnings(self) -> list[str]:
        return [w for r in self._session.results for w in r.warnings]

    @property
    def trigger(self) -> TerminationTrigger:
        return self._session.trigger

    def wait_and_restore(
        self,
        confirm: Optional[Callable[[], bool]] = None,
        poll_interval: float = _POLL_INTERVAL,
    ) -> RestoreResult:
        """Block until a termination trigger fires, then restore.

        Args:
            confirm: Optional interactive confirmation (e.g. ``press_enter``)
                run on a daemon thread; a truthy return fires the trigger.
            poll_interval: Seconds between trigger checks.

        Returns:
            Aggregate RestoreResult.
        """
        return self._session.wait_and_restore(confirm, poll_interval)

    def close(self, reason: str = "closed") -> RestoreResult:
        """Fire the trigger and restore immediately."""
        return self._session.restore(reason)

    def __enter__(self) -> "SessionHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close("context-exit")
