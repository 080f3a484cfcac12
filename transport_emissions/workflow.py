from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from transport_emissions.config import SessionContext
from transport_emissions.form_state import EmissionDraft, EmissionFormState, validate_draft
from transport_emissions.import_export import (
    DownloadedFile,
    check_import_file,
    describe_import_failure,
    describe_import_result,
    fetch_emissions_export,
    fetch_product_template,
)
from transport_emissions.models import BomLineItem, EmissionRecord, EmissionReference
from transport_emissions.record_store import ApiError, MissingCredentialsError, RecordStore
from transport_emissions.reference_cache import ReferenceCache
from transport_emissions.viewers import ViewerTable, build_bom_view, build_override_view

logger = logging.getLogger(__name__)


class FormMode(str, Enum):
    CREATE = "create"
    EDIT = "edit"


@dataclass(frozen=True)
class WorkflowSnapshot:
    """Immutable view of the console state handed to subscribers."""

    records: Tuple[EmissionRecord, ...]
    is_loading: bool
    load_error: Optional[str]
    form_mode: Optional[FormMode]
    form_target_id: Optional[int]
    draft: Optional[EmissionDraft]
    form_error: Optional[str]
    is_submitting: bool
    delete_target_id: Optional[int]
    delete_error: Optional[str]
    is_deleting: bool
    overrides_record: Optional[EmissionRecord]
    bom_record: Optional[EmissionRecord]
    import_blocked: bool
    import_blocked_message: Optional[str]
    import_notice: Optional[str]
    import_error: Optional[str]
    import_errors: Tuple[Dict[str, str], ...]
    is_importing: bool
    auth_required: bool

    @property
    def form_open(self) -> bool:
        return self.form_mode is not None

    @property
    def delete_confirm_open(self) -> bool:
        return self.delete_target_id is not None

    @property
    def is_idle(self) -> bool:
        return not (
            self.form_open
            or self.delete_confirm_open
            or self.overrides_record is not None
            or self.bom_record is not None
            or self.import_blocked
        )

    @property
    def submit_label(self) -> str:
        if self.is_submitting:
            return "Saving..."
        return "Update" if self.form_mode == FormMode.EDIT else "Add"

    @property
    def delete_label(self) -> str:
        return "Deleting..." if self.is_deleting else "Delete"


Listener = Callable[[WorkflowSnapshot], None]


class TransportEmissionWorkflow:
    """Coordinates the transport emission list, its dialogs and the record store.

    Callers drive it through intent methods (``open_create``, ``submit_draft``,
    ``confirm_delete`` ...). Network-bound intents are coroutines that never raise;
    failures end up in the inline error fields of the snapshot.
    """

    def __init__(
        self,
        store: RecordStore,
        cache: Optional[ReferenceCache] = None,
        on_records_changed: Optional[Callable[[List[EmissionRecord]], None]] = None,
        on_auth_error: Optional[Callable[[], None]] = None,
    ) -> None:
        self.store = store
        self.cache = cache if cache is not None else ReferenceCache(store)
        self.form = EmissionFormState()
        self._on_records_changed = on_records_changed
        self._on_auth_error = on_auth_error
        self._listeners: List[Listener] = []
        self._tasks: Set["asyncio.Future[Any]"] = set()

        self._records: Tuple[EmissionRecord, ...] = ()
        self._list_generation = 0
        self._is_loading = False
        self._load_error: Optional[str] = None

        self._form_mode: Optional[FormMode] = None
        self._draft_generation = 0
        self._form_error: Optional[str] = None
        self._is_submitting = False

        self._delete_target_id: Optional[int] = None
        self._delete_error: Optional[str] = None
        self._deleting: Set[int] = set()

        self._overrides_record: Optional[EmissionRecord] = None
        self._bom_record: Optional[EmissionRecord] = None

        self._import_blocked_message: Optional[str] = None
        self._import_notice: Optional[str] = None
        self._import_error: Optional[str] = None
        self._import_errors: Tuple[Dict[str, str], ...] = ()
        self._is_importing = False
        self._auth_required = False

    @classmethod
    def from_session(cls, session: SessionContext, **kwargs: Any) -> "TransportEmissionWorkflow":
        return cls(RecordStore(session), **kwargs)

    @property
    def session(self) -> SessionContext:
        return self.store.session

    @property
    def records(self) -> List[EmissionRecord]:
        return list(self._records)

    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            records=self._records,
            is_loading=self._is_loading,
            load_error=self._load_error,
            form_mode=self._form_mode,
            form_target_id=self.form.target_id if self._form_mode is not None else None,
            draft=self.form.draft.copy() if self._form_mode is not None else None,
            form_error=self._form_error,
            is_submitting=self._is_submitting,
            delete_target_id=self._delete_target_id,
            delete_error=self._delete_error,
            is_deleting=self._delete_target_id in self._deleting,
            overrides_record=self._overrides_record,
            bom_record=self._bom_record,
            import_blocked=self._import_blocked_message is not None,
            import_blocked_message=self._import_blocked_message,
            import_notice=self._import_notice,
            import_error=self._import_error,
            import_errors=self._import_errors,
            is_importing=self._is_importing,
            auth_required=self._auth_required,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    def _find(self, record_id: Optional[int]) -> Optional[EmissionRecord]:
        return next((r for r in self._records if r.id == record_id), None)

    def _set_records(self, records: Iterable[EmissionRecord]) -> None:
        self._records = tuple(records)
        if self._overrides_record is not None:
            self._overrides_record = self._find(self._overrides_record.id)
        if self._bom_record is not None:
            self._bom_record = self._find(self._bom_record.id)
        if self._delete_target_id is not None and self._find(self._delete_target_id) is None:
            self._delete_target_id = None
            self._delete_error = None
        if self._on_records_changed is not None:
            self._on_records_changed(list(self._records))

    def _remote_failed(self, exc: Exception, action: str) -> str:
        if isinstance(exc, MissingCredentialsError):
            logger.warning("Missing credentials while trying to %s", action)
            self._auth_required = True
            if self._on_auth_error is not None:
                self._on_auth_error()
        elif isinstance(exc, ApiError):
            logger.error("Error trying to %s (status %s): %s", action, exc.status, exc.message)
        else:
            logger.error("Error trying to %s: %s", action, exc)
        return str(exc) or f"Failed to {action}."

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Future[Any]":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """Wait for fire-and-forget work (cache refreshes) to finish."""
        while self._tasks:
            results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Background task failed: %s", result)

    # -- list -----------------------------------------------------------------

    async def activate(self) -> None:
        """Load the record list and all reference datasets concurrently."""
        await asyncio.gather(self.load_emissions(), self.cache.refresh())
        self._notify()

    async def load_emissions(self) -> bool:
        if self.session.product_id is None:
            return False

        self._list_generation += 1
        generation = self._list_generation
        self._is_loading = True
        self._notify()
        try:
            records = await self.store.list_emissions()
        except (ApiError, ValueError) as exc:
            message = self._remote_failed(exc, "fetch transport emissions")
            if generation == self._list_generation:
                self._is_loading = False
                self._load_error = message
                self._notify()
            return False

        if generation != self._list_generation:
            logger.info("Dropping stale transport emission list")
            return False
        self._is_loading = False
        self._load_error = None
        self._set_records(records)
        self._notify()
        return True

    # -- create / edit form ---------------------------------------------------

    def _reset_form(self, mode: Optional[FormMode]) -> None:
        self._draft_generation += 1
        self._form_mode = mode
        self._form_error = None
        self._is_submitting = False

    async def open_create(self) -> None:
        self.form.open_for_create()
        self._reset_form(FormMode.CREATE)
        self._notify()
        self._spawn(self._refresh_references())

    async def open_edit(self, record_id: int) -> bool:
        record = self._find(record_id)
        if record is None:
            logger.warning("Cannot edit transport emission %s: not in the loaded list", record_id)
            return False
        self.form.open_for_edit(record)
        self._reset_form(FormMode.EDIT)
        self._notify()
        self._spawn(self._refresh_references())
        return True

    def cancel_form(self) -> None:
        self.form.open_for_create()
        self._reset_form(None)
        self._notify()

    async def _refresh_references(self) -> None:
        await self.cache.refresh()
        self._notify()

    def _edit_draft(self, change: Callable[[], None]) -> None:
        if self._form_mode is None:
            return
        change()
        self._notify()

    def update_field(self, name: str, value: str) -> None:
        self._edit_draft(lambda: self.form.update_field(name, value))

    def select_reference(self, name: Optional[str]) -> None:
        self._edit_draft(lambda: self.form.select_reference(name, self.cache.references))

    def add_override(self) -> None:
        self._edit_draft(self.form.add_override)

    def update_override(self, index: int, field_name: str, raw: str) -> None:
        self._edit_draft(lambda: self.form.update_override(index, field_name, raw))

    def remove_override(self, index: int) -> None:
        self._edit_draft(lambda: self.form.remove_override(index))

    def add_line_item(self, item_id: Optional[int]) -> None:
        self._edit_draft(lambda: self.form.add_line_item(item_id))

    def remove_line_item(self, item_id: int) -> None:
        self._edit_draft(lambda: self.form.remove_line_item(item_id))

    def set_reference_query(self, query: str) -> None:
        self.cache.reference_query = query
        self._notify()

    def set_bom_query(self, query: str) -> None:
        self.cache.bom_query = query
        self._notify()

    def reference_options(self) -> Tuple[EmissionReference, ...]:
        return self.cache.filtered_references()

    def bom_options(self) -> Tuple[BomLineItem, ...]:
        return self.cache.filtered_bom_items(exclude=self.form.draft.line_items)

    @property
    def can_submit(self) -> bool:
        return self._form_mode is not None and not self._is_submitting and not self.form.is_incomplete

    async def submit_draft(self) -> bool:
        if self._form_mode is None or self._is_submitting:
            return False

        ok, message = validate_draft(self.form.draft)
        if not ok:
            logger.warning("Transport emission form rejected: %s", message)
            self._form_error = message
            self._notify()
            return False

        generation = self._draft_generation
        target_id = self.form.target_id
        payload = self.form.to_payload()
        self._is_submitting = True
        self._form_error = None
        self._notify()

        try:
            if target_id is not None:
                await self.store.update_emission(target_id, payload)
            else:
                await self.store.create_emission(payload)
        except (ApiError, ValueError) as exc:
            message = self._remote_failed(exc, "save transport emission")
            if generation != self._draft_generation:
                logger.info("Save failed for a draft that is no longer open")
                return False
            self._is_submitting = False
            self._form_error = message
            self._notify()
            return False

        await self.load_emissions()
        if generation != self._draft_generation:
            logger.info("Draft was closed before the save finished; form left untouched")
            return True
        self.form.open_for_create()
        self._reset_form(None)
        self._notify()
        return True

    # -- delete ---------------------------------------------------------------

    def request_delete(self, record_id: int) -> bool:
        if self._delete_target_id is not None and self._delete_target_id in self._deleting:
            return False
        if self._find(record_id) is None:
            logger.warning("Cannot delete transport emission %s: not in the loaded list", record_id)
            return False
        self._delete_target_id = record_id
        self._delete_error = None
        self._notify()
        return True

    def cancel_delete(self) -> None:
        self._delete_target_id = None
        self._delete_error = None
        self._notify()

    async def confirm_delete(self) -> bool:
        target_id = self._delete_target_id
        if target_id is None or target_id in self._deleting:
            return False

        self._deleting.add(target_id)
        self._delete_error = None
        self._notify()
        try:
            await self.store.delete_emission(target_id)
        except (ApiError, ValueError) as exc:
            message = self._remote_failed(exc, "delete transport emission")
            self._deleting.discard(target_id)
            if self._delete_target_id == target_id:
                self._delete_error = message
            self._notify()
            return False

        self._deleting.discard(target_id)
        if self._delete_target_id == target_id:
            self._delete_target_id = None
        self._set_records(r for r in self._records if r.id != target_id)
        self._notify()
        return True

    # -- read-only viewers ----------------------------------------------------

    def show_overrides(self, record_id: int) -> bool:
        record = self._find(record_id)
        if record is None:
            return False
        self._overrides_record = record
        self._notify()
        return True

    def close_overrides(self) -> None:
        self._overrides_record = None
        self._notify()

    def show_bom_items(self, record_id: int) -> bool:
        record = self._find(record_id)
        if record is None:
            return False
        self._bom_record = record
        self._notify()
        return True

    def close_bom_items(self) -> None:
        self._bom_record = None
        self._notify()

    def overrides_view(self) -> Optional[ViewerTable]:
        if self._overrides_record is None:
            return None
        return build_override_view(self._overrides_record, self.cache.lifecycle_choices)

    def bom_items_view(self) -> Optional[ViewerTable]:
        if self._bom_record is None:
            return None
        return build_bom_view(self._bom_record, self.cache.bom_items)

    # -- import / export ------------------------------------------------------

    async def import_file(self, filename: str, content: bytes) -> bool:
        if self._is_importing:
            return False

        self._import_error = None
        self._import_errors = ()
        self._import_notice = None
        check = check_import_file(filename, content)
        if check.error is not None:
            logger.warning("Import of %s rejected: %s", filename, check.error)
            self._import_error = check.error
            self._notify()
            return False
        if check.blocked_reason is not None:
            logger.warning("Import of %s blocked: %s", filename, check.blocked_reason)
            self._import_blocked_message = check.blocked_reason
            self._notify()
            return False

        self._is_importing = True
        self._notify()
        try:
            result = await self.store.import_file(filename, content, check.extension)
        except ApiError as exc:
            self._remote_failed(exc, f"import {filename}")
            message, field_errors = describe_import_failure(exc)
            self._is_importing = False
            self._import_error = message
            self._import_errors = tuple(field_errors)
            self._notify()
            return False
        except ValueError as exc:
            self._is_importing = False
            self._import_error = self._remote_failed(exc, f"import {filename}")
            self._notify()
            return False

        self._is_importing = False
        self._import_notice = describe_import_result(result)
        self._notify()
        await self.load_emissions()
        self._spawn(self._refresh_references())
        return True

    def dismiss_import_notice(self) -> None:
        self._import_blocked_message = None
        self._notify()

    def clear_import_messages(self) -> None:
        self._import_notice = None
        self._import_error = None
        self._import_errors = ()
        self._notify()

    async def _download(self, fetch: Callable[[], Awaitable[DownloadedFile]], what: str) -> Optional[DownloadedFile]:
        try:
            return await fetch()
        except (ApiError, ValueError) as exc:
            self._import_error = f"Download failed: {self._remote_failed(exc, f'download {what}')}"
            self._notify()
            return None

    async def download_template(self, fmt: str) -> Optional[DownloadedFile]:
        return await self._download(lambda: fetch_product_template(self.store, fmt), f"{fmt} template")

    async def download_export(self, fmt: str, template: bool = False) -> Optional[DownloadedFile]:
        return await self._download(
            lambda: fetch_emissions_export(self.store, fmt, template=template), f"{fmt} export"
        )
