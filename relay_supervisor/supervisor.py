"""
Relay supervisor.

Owns the two pipeline slots and drives them through their state machine:
applies user commands, spawns and terminates ffmpeg, turns progress output and
process exits into transitions, retries crashed runs within a bounded budget,
restores declared intent on startup and stops everything on shutdown.

Every transition is persisted to the state store and then published to the
event broadcaster, in that order.
"""

import logging
import threading
import time
from typing import Optional, Union

from .commands import build_command, validate_address
from .config import Config
from .document import RunState, SlotAddress, SlotName, StateDocument, StateRecord, UserIntent
from .errors import ConfigurationError, ConflictError, StoreIOError, SubprocessCrash, SubprocessSpawnError
from .events import EventBroadcaster, SlotEvent
from .history import HistoryRecorder
from .process import ProcessManager
from .slots import PipelineSlot
from .store import StateStore

logger = logging.getLogger(__name__)

AddressUpdate = Union[SlotAddress, dict, None]


class RelaySupervisor:
    """Registry and state machine driver for the relay slots."""

    def __init__(
        self,
        config: Config,
        store: StateStore,
        broadcaster: EventBroadcaster,
        process_manager: ProcessManager = None,
        history: Optional[HistoryRecorder] = None,
    ):
        self.config = config
        self._store = store
        self._broadcaster = broadcaster
        self._processes = process_manager or ProcessManager(config)
        self._history = history
        self._store_lock = threading.Lock()
        self._slots: dict[SlotName, PipelineSlot] = {
            name: PipelineSlot(name=name) for name in SlotName
        }
        self._last_progress_commit: dict[SlotName, float] = {}
        self._shutting_down = False
        broadcaster.set_snapshot_provider(self.snapshot)

    # Startup

    def load(self) -> StateDocument:
        """Build the slots from the state store."""
        document = self._store.load()
        self._slots = {name: PipelineSlot.from_document(name, document) for name in SlotName}
        for slot in self._slots.values():
            logger.info(
                f"Loaded {slot.name.value}: intent={slot.user_intent.value} state={slot.run_state.value}"
            )
        return document

    def restore_all(self) -> None:
        """Re-spawn slots whose intent is start, correct the others to stopped."""
        logger.info("Restoring relay processes...")
        for slot in self._slots.values():
            with slot.lock:
                if slot.user_intent is UserIntent.START:
                    logger.info(f"Restoring {slot.name.value}")
                    try:
                        self._start_locked(slot, attempt=0)
                    except ConfigurationError as e:
                        logger.warning(f"Cannot restore {slot.name.value}: {e}")
                        slot.message = str(e)
                        self._commit_and_publish(slot)
                elif slot.run_state is RunState.ERROR:
                    self._transition(slot, RunState.STOPPED, "")
                slot.store_error = None

        # Persist normalizations made while loading
        self._commit()

    # Queries

    @property
    def slots(self) -> dict[SlotName, PipelineSlot]:
        return dict(self._slots)

    def get_slot(self, name: Union[str, SlotName]) -> PipelineSlot:
        try:
            slot_name = SlotName(name)
        except ValueError:
            raise ConfigurationError(f"Unknown slot '{name}'") from None
        return self._slots[slot_name]

    def snapshot(self) -> dict:
        """Current {slot: state} mapping. Does not take slot locks."""
        return {name.value: slot.to_dict() for name, slot in self._slots.items()}

    def live_handles(self) -> dict[str, object]:
        return {
            name.value: slot.process
            for name, slot in self._slots.items()
            if slot.process is not None
        }

    def process_stats(self, name: Union[str, SlotName]) -> Optional[dict]:
        handle = self.get_slot(name).process
        if handle is None:
            return None
        return self._processes.stats(handle)

    # Commands

    def apply_user_command(self, slot_name: Union[str, SlotName], action: str, address: AddressUpdate = None) -> dict:
        """Apply a start/stop command, optionally updating the slot's address.

        Raises ConfigurationError, ConflictError, or StoreIOError when the
        command was carried out but could not be persisted.
        """
        slot = self.get_slot(slot_name)
        try:
            intent = UserIntent(action)
        except ValueError:
            raise ConfigurationError(f"Unknown action '{action}'") from None

        if not slot.lock.acquire(timeout=self.config.command_lock_timeout):
            raise ConflictError(f"{slot.name.value} is busy with another transition")
        try:
            if self._shutting_down:
                raise ConflictError("Supervisor is shutting down")

            slot.store_error = None
            logger.info(f"Command {intent.value} for {slot.name.value}")
            if intent is UserIntent.START:
                self._handle_start(slot, address)
            else:
                self._handle_stop(slot, address)

            error, slot.store_error = slot.store_error, None
            if error is not None:
                raise error
            return slot.to_dict()
        finally:
            slot.lock.release()

    def _handle_start(self, slot: PipelineSlot, address: AddressUpdate):
        if slot.run_state in (RunState.STARTING, RunState.STOPPING):
            raise ConflictError(f"{slot.name.value} is {slot.run_state.value}")

        previous_intent, slot.user_intent = slot.user_intent, UserIntent.START
        try:
            new_address = self._merge_address(slot, address)
            if new_address is not None:
                self._set_address(slot, new_address)
            if slot.run_state is RunState.STARTED:
                self._commit_and_publish(slot)
                return
            self._cancel_retry(slot)
            slot.restart_attempts = 0
            self._start_locked(slot, attempt=0)
        except ConflictError:
            slot.user_intent = previous_intent
            raise
        except ConfigurationError as e:
            slot.message = str(e)
            self._commit_and_publish(slot)
            raise

    def _handle_stop(self, slot: PipelineSlot, address: AddressUpdate):
        if slot.run_state is RunState.STOPPING:
            raise ConflictError(f"{slot.name.value} is already stopping")

        previous_intent, slot.user_intent = slot.user_intent, UserIntent.STOP
        try:
            new_address = self._merge_address(slot, address)
            if new_address is not None:
                self._set_address(slot, new_address)
        except ConflictError:
            slot.user_intent = previous_intent
            raise
        except ConfigurationError:
            self._cancel_retry(slot)
            self._commit_and_publish(slot)
            raise

        self._cancel_retry(slot)
        state = slot.run_state
        if state is RunState.STOPPED:
            self._commit_and_publish(slot)
        elif state is RunState.ERROR:
            self._transition(slot, RunState.STOPPED, "")
        elif state is RunState.STARTING:
            # Honored once ffmpeg confirms liveness or dies
            slot.message = "stop requested while starting"
            self._commit_and_publish(slot)
        elif state is RunState.STARTED:
            self._stop_locked(slot)

    def _merge_address(self, slot: PipelineSlot, address: AddressUpdate) -> Optional[SlotAddress]:
        """Return the updated address, or None if nothing changes."""
        if address is None:
            return None
        if isinstance(address, SlotAddress):
            fields = address.model_dump()
        else:
            fields = {key: value for key, value in dict(address).items() if value is not None}
            unknown = set(fields) - set(SlotAddress.model_fields)
            if unknown:
                raise ConfigurationError(f"Unknown address fields: {', '.join(sorted(unknown))}")
            if not all(isinstance(value, str) for value in fields.values()):
                raise ConfigurationError("Address values must be strings")

        merged = slot.address.model_copy(update=fields)
        if merged == slot.address:
            return None
        if slot.run_state not in (RunState.STOPPED, RunState.ERROR):
            raise ConflictError(
                f"{slot.name.value} must be stopped to change its address (is {slot.run_state.value})"
            )
        return merged

    def _set_address(self, slot: PipelineSlot, address: SlotAddress):
        slot.address = validate_address(address)
        logger.info(
            f"Address of {slot.name.value} set to source={slot.address.source!r} output={slot.address.output!r}"
        )

    # Run lifecycle (slot.lock held)

    def _start_locked(self, slot: PipelineSlot, attempt: int):
        argv = build_command(slot.name, slot.address, self.config)
        run_id = slot.next_run()
        message = f"restart attempt {attempt}/{self.config.max_restart_attempts}" if attempt else ""

        # Callbacks of the new process block on slot.lock until starting is published
        try:
            handle = self._processes.spawn(
                slot.name.value,
                argv,
                on_output=lambda chunk: self._on_output(slot, run_id, chunk),
                on_exit=lambda returncode: self._on_exit(slot, run_id, returncode),
            )
        except SubprocessSpawnError as e:
            logger.error(f"Failed to start {slot.name.value}: {e}")
            if self._history:
                self._history.spawn_failed(slot.name.value, argv, attempt, str(e))
            self._transition(slot, RunState.STARTING, message)
            self._transition(slot, RunState.ERROR, str(e))
            return

        slot.process = handle
        if self._history:
            slot.history_run_id = self._history.run_started(slot.name.value, argv, attempt, handle.pid)
        self._transition(slot, RunState.STARTING, message)
        if self.config.start_timeout > 0:
            slot.start_timer = self._start_timer(
                self.config.start_timeout, self._on_start_timeout, slot, run_id
            )

    def _stop_locked(self, slot: PipelineSlot, message: str = ""):
        self._transition(slot, RunState.STOPPING, message)
        if slot.process is not None:
            self._processes.terminate(slot.process, timeout=self.config.stop_timeout)

    def _confirm_liveness(self, slot: PipelineSlot):
        self._cancel_timer(slot.start_timer)
        slot.start_timer = None
        self._transition(slot, RunState.STARTED)
        if slot.user_intent is UserIntent.STOP:
            logger.info(f"{slot.name.value} came up after a stop request, stopping it")
            self._stop_locked(slot)

    # Process callbacks

    def _on_output(self, slot: PipelineSlot, run_id: int, chunk: str):
        log_lines = []
        with slot.lock:
            if slot.run_id != run_id or slot.parser is None:
                return

            latest = None
            for line in slot.parser.feed(chunk):
                update = slot.parser.consume_line(line)
                if update is None:
                    log_lines.append(line)
                else:
                    latest = update

            if latest is not None:
                slot.progress = latest.snapshot
                if slot.run_state is RunState.STARTING:
                    self._confirm_liveness(slot)
                elif slot.run_state in (RunState.STARTED, RunState.STOPPING):
                    self._on_progress(slot)
            history_run_id = slot.history_run_id

        if self._history:
            for line in log_lines:
                self._history.log_line(history_run_id, slot.name.value, line)

    def _on_progress(self, slot: PipelineSlot):
        now = time.monotonic()
        last = self._last_progress_commit.get(slot.name)
        if last is None or now - last >= self.config.progress_persist_interval:
            self._last_progress_commit[slot.name] = now
            self._commit(slot)
        self._broadcaster.publish(
            SlotEvent(
                type="progress",
                slot=slot.name.value,
                data={"runState": slot.run_state.value, "progress": dict(slot.progress)},
            )
        )

    def _on_start_timeout(self, slot: PipelineSlot, run_id: int):
        with slot.lock:
            slot.start_timer = None
            if slot.run_id != run_id or slot.run_state is not RunState.STARTING or slot.process is None:
                return
            logger.warning(
                f"{slot.name.value} reported no progress within {self.config.start_timeout}s, terminating"
            )
            self._processes.terminate(slot.process, timeout=self.config.stop_timeout)

    def _on_exit(self, slot: PipelineSlot, run_id: int, returncode: Optional[int]):
        retry = False
        with slot.lock:
            if slot.run_id != run_id:
                return

            slot.process = None
            self._cancel_timer(slot.start_timer)
            slot.start_timer = None
            if slot.parser is not None:
                for line in slot.parser.flush():
                    update = slot.parser.consume_line(line)
                    if update is not None:
                        slot.progress = update.snapshot

            state = slot.run_state
            outcome = "stopped"
            if state is RunState.STOPPING:
                self._transition(slot, RunState.STOPPED, "")
            elif state in (RunState.STARTING, RunState.STARTED):
                outcome = "crashed"
                crash = SubprocessCrash(slot.name.value, returncode)
                if state is RunState.STARTED and slot.stable_for(self.config.stable_run_seconds):
                    slot.restart_attempts = 0

                if slot.user_intent is UserIntent.STOP:
                    self._transition(slot, RunState.ERROR, str(crash))
                    self._transition(slot, RunState.STOPPED, "")
                elif self._shutting_down:
                    self._transition(slot, RunState.ERROR, f"{crash} during shutdown")
                elif slot.restart_attempts < self.config.max_restart_attempts:
                    slot.restart_attempts += 1
                    logger.warning(f"{crash}, attempting restart")
                    self._transition(
                        slot,
                        RunState.ERROR,
                        f"{crash}, restarting in {self.config.restart_delay:g}s "
                        f"(attempt {slot.restart_attempts}/{self.config.max_restart_attempts})",
                    )
                    retry = True
                else:
                    logger.error(f"{slot.name.value} exceeded max restart attempts, giving up")
                    self._transition(
                        slot,
                        RunState.ERROR,
                        f"{crash}, giving up after {self.config.max_restart_attempts} restart attempts",
                    )
            else:
                logger.warning(f"Exit of {slot.name.value} reported while {state.value}")

            if self._history:
                self._history.run_ended(slot.history_run_id, returncode, outcome)
            slot.history_run_id = None

        if retry:
            self._schedule_retry(slot)

    # Restart policy

    def _schedule_retry(self, slot: PipelineSlot):
        run_id = slot.run_id
        if self.config.restart_delay <= 0:
            self._retry(slot, run_id)
            return
        with slot.lock:
            if slot.run_id == run_id:
                slot.retry_timer = self._start_timer(self.config.restart_delay, self._retry, slot, run_id)

    def _retry(self, slot: PipelineSlot, run_id: int):
        with slot.lock:
            slot.retry_timer = None
            if (
                self._shutting_down
                or slot.run_id != run_id
                or slot.user_intent is not UserIntent.START
                or slot.run_state is not RunState.ERROR
            ):
                return
            logger.info(
                f"Restarting {slot.name.value} "
                f"(attempt {slot.restart_attempts}/{self.config.max_restart_attempts})"
            )
            try:
                self._start_locked(slot, attempt=slot.restart_attempts)
            except ConfigurationError as e:
                logger.error(f"Cannot restart {slot.name.value}: {e}")
                slot.message = str(e)
                self._commit_and_publish(slot)

    def _cancel_retry(self, slot: PipelineSlot):
        self._cancel_timer(slot.retry_timer)
        slot.retry_timer = None

    # Shutdown

    def shutdown(self, timeout: float = None) -> None:
        """Terminate every live ffmpeg process and persist the final states."""
        logger.info("Stopping all relays...")
        if timeout is None:
            timeout = self.config.stop_timeout
        self._shutting_down = True

        stopping = []
        for slot in self._slots.values():
            with slot.lock:
                self._cancel_retry(slot)
                self._cancel_timer(slot.start_timer)
                slot.start_timer = None
                if slot.process is None:
                    continue
                if slot.run_state is RunState.STARTED:
                    self._transition(slot, RunState.STOPPING, "supervisor shutting down")
                stopping.append((slot, slot.process))

        for slot, handle in stopping:
            try:
                self._processes.terminate(handle, timeout=timeout, wait=True)
            except Exception as e:
                logger.error(f"Error terminating {slot.name.value}: {e}")

        for slot, handle in stopping:
            if not handle.wait_closed(timeout=5):
                logger.warning(f"Exit of {slot.name.value} was not confirmed")

        self._commit()
        logger.info("All relays stopped")

    # Persistence and events

    def _transition(self, slot: PipelineSlot, target: RunState, message: str = ""):
        previous = slot.transition(target, message)
        suffix = f" ({message})" if message else ""
        logger.info(f"{slot.name.value}: {previous.value} -> {target.value}{suffix}")
        self._commit(slot)
        self._publish_state(slot)

    def _commit_and_publish(self, slot: PipelineSlot):
        self._commit(slot)
        self._publish_state(slot)

    def _publish_state(self, slot: PipelineSlot):
        self._broadcaster.publish(SlotEvent(type="state", slot=slot.name.value, data=slot.to_dict()))

    def build_document(self) -> StateDocument:
        return StateDocument(
            addresses={name: slot.address.model_copy() for name, slot in self._slots.items()},
            states={
                name: StateRecord(type=slot.run_state, message=slot.message)
                for name, slot in self._slots.items()
            },
            user_actions={name: slot.user_intent for name, slot in self._slots.items()},
            progresses={name: dict(slot.progress) for name, slot in self._slots.items()},
        )

    def _commit(self, slot: PipelineSlot = None) -> bool:
        """Write the document built from the in-memory slots."""
        with self._store_lock:
            try:
                self._store.save(self.build_document())
                return True
            except StoreIOError as e:
                logger.error(f"Failed to persist state: {e}")
                if slot is not None:
                    slot.store_error = e
                self._broadcaster.publish(
                    SlotEvent(
                        type="error",
                        slot=slot.name.value if slot is not None else None,
                        data={"message": str(e)},
                    )
                )
                return False

    # Timers

    @staticmethod
    def _start_timer(delay: float, function, *args) -> threading.Timer:
        timer = threading.Timer(delay, function, args)
        timer.daemon = True
        timer.start()
        return timer

    @staticmethod
    def _cancel_timer(timer: Optional[threading.Timer]):
        if timer is not None:
            timer.cancel()
