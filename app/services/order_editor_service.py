from __future__ import annotations

import inspect
import threading
import time
from collections.abc import Callable

from app.logging_config import get_logger
from app.models import EditMode
from app.services import order_composition_service as composition
from app.services.autosave_service import AutosaveScheduler, Writer
from app.services.catalog_store import CatalogStore
from app.services.order_composition_service import (
    CompositionSession,
    EditorState,
    EditOutcome,
    build_save_snapshot,
    validate_for_save,
)

logger = get_logger('services.order_editor')

# command name -> (operation, needs catalog)
COMMANDS: dict[str, tuple[Callable[..., EditOutcome], bool]] = {
    'select_supplier': (composition.select_supplier, True),
    'update_header': (composition.update_header, False),
    'add_course': (composition.add_course, True),
    'remove_course': (composition.remove_course, False),
    'create_edition': (composition.create_edition, True),
    'attach_edition': (composition.attach_edition, True),
    'clone_edition': (composition.clone_edition, True),
    'patch_edition': (composition.patch_edition, True),
    'remove_edition': (composition.remove_edition, False),
    'add_line_item': (composition.add_line_item, False),
    'select_service': (composition.select_service, True),
    'update_line_item': (composition.update_line_item, False),
    'remove_line_item': (composition.remove_line_item, False),
    'create_em': (composition.create_em, False),
    'reallocate_em': (composition.reallocate_em, False),
    'remove_em': (composition.remove_em, False),
}


class CommandError(ValueError):
    pass


class EditorModeConflict(ValueError):
    def __init__(self, mode: EditMode) -> None:
        super().__init__(f'Order is open in {mode.value} mode')
        self.mode = mode


class OrderEditor:
    """One open order: its composition session plus the autosave scheduler behind it."""

    def __init__(
        self,
        session: CompositionSession,
        catalog: CatalogStore,
        writer: Writer,
        *,
        quiet_period: float,
        retry_delay: float,
        on_finalized: Callable[[CompositionSession], None] | None = None,
    ) -> None:
        self.session = session
        self._catalog = catalog
        self._on_finalized = on_finalized
        self._lock = threading.RLock()
        self.scheduler = AutosaveScheduler(
            session.order_id,
            writer,
            quiet_period=quiet_period,
            retry_delay=retry_delay,
        )
        self.closed = False

    @property
    def order_id(self) -> str:
        return self.session.order_id

    @property
    def mode(self) -> EditMode:
        return self.session.mode

    def apply(self, command: str, **params) -> EditOutcome:
        entry = COMMANDS.get(command)
        if entry is None:
            raise CommandError(f'Unknown command: {command}')
        operation, needs_catalog = entry
        with self._lock:
            if self.closed:
                return composition.NOOP
            args = (self.session, self._catalog) if needs_catalog else (self.session,)
            try:
                inspect.signature(operation).bind(*args, **params)
            except TypeError as exc:
                raise CommandError(f'Invalid parameters for {command}') from exc
            outcome = operation(*args, **params)
            if outcome.applied and validate_for_save(self.session) is None:
                self.scheduler.notify(build_save_snapshot(self.session))
            return outcome

    def finalize(self, *, timeout: float | None = None) -> EditOutcome:
        with self._lock:
            if self.closed:
                return composition.NOOP
            problem = validate_for_save(self.session)
            if problem:
                return EditOutcome(applied=False, message=problem)
            snapshot = build_save_snapshot(self.session)
            if not self.scheduler.flush(snapshot, timeout=timeout):
                return EditOutcome(applied=False, message='Sync failed; changes are kept and will be retried')
            self.session.state = EditorState.FINALIZED
            self._shutdown()
        logger.info('order finalized', extra={'order_id': self.order_id, 'mode': self.mode.value})
        if self._on_finalized is not None:
            self._on_finalized(self.session)
        return EditOutcome(applied=True)

    def close(self, *, confirm: bool = False) -> EditOutcome:
        with self._lock:
            if self.closed:
                return composition.NOOP
            if self.scheduler.has_unacknowledged_writes and not confirm:
                return EditOutcome(
                    applied=False,
                    needs_confirmation=True,
                    message='Changes are still being saved; close anyway?',
                )
            self._shutdown()
            return EditOutcome(applied=True)

    def status(self) -> dict:
        with self._lock:
            return {
                'saving': self.scheduler.has_unacknowledged_writes,
                'sync_failed': self.scheduler.sync_failed,
                'last_error': self.scheduler.last_error,
                'closed': self.closed,
            }

    def _shutdown(self) -> None:
        self.closed = True
        self.scheduler.stop()


class EditorRegistry:
    """At most one open editor per order id."""

    def __init__(self) -> None:
        self._editors: dict[str, OrderEditor] = {}
        self._lock = threading.Lock()

    def get(self, order_id: str) -> OrderEditor | None:
        with self._lock:
            editor = self._editors.get(order_id)
            if editor is not None and editor.closed:
                del self._editors[order_id]
                return None
            return editor

    def open(
        self,
        order_id: str,
        factory: Callable[[], OrderEditor],
        *,
        mode: EditMode | None = None,
    ) -> OrderEditor:
        """Return the open editor for ``order_id``, building one with ``factory`` if needed.

        ``factory`` runs under the registry lock. With ``mode`` given, an open
        editor in another mode raises ``EditorModeConflict``.
        """
        with self._lock:
            editor = self._editors.get(order_id)
            if editor is None or editor.closed:
                editor = factory()
                self._editors[order_id] = editor
            elif mode is not None and editor.mode != mode:
                raise EditorModeConflict(editor.mode)
            return editor

    def discard(self, order_id: str) -> None:
        with self._lock:
            self._editors.pop(order_id, None)

    def close_all(self, *, drain_timeout: float = 0.0) -> None:
        """Close every editor, first giving pending autosaves up to ``drain_timeout`` seconds in total."""
        with self._lock:
            editors = list(self._editors.values())
            self._editors.clear()
        deadline = time.monotonic() + drain_timeout
        for editor in editors:
            remaining = max(deadline - time.monotonic(), 0.0)
            if not editor.scheduler.wait_idle(timeout=remaining):
                logger.warning('closing editor with unsaved changes', extra={'order_id': editor.order_id})
            editor.close(confirm=True)
